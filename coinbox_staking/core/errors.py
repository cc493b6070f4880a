"""Error taxonomy for the staking engine.

Engine operations report failures as an `ErrorKind` inside a `StakeResult`.
The exception types are for callers that prefer raising (see
``StakeEngine.execute_or_raise``) and for the custodian boundary.
"""

from __future__ import annotations

from enum import Enum, unique
from typing import Optional


@unique
class ErrorKind(Enum):
    INVALID_AMOUNT = "InvalidAmount"
    INVALID_ADDRESS = "InvalidAddress"
    UNAUTHORIZED = "Unauthorized"
    INVALID_BALANCE_ON_COOLDOWN = "InvalidBalanceOnCooldown"
    INSUFFICIENT_COOLDOWN = "InsufficientCooldown"
    UNSTAKE_WINDOW_FINISHED = "UnstakeWindowFinished"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INVALID_TIMESTAMP = "InvalidTimestamp"
    TRANSFER_FAILED = "TransferFailed"
    ALREADY_INITIALIZED = "AlreadyInitialized"
    NOT_INITIALIZED = "NotInitialized"
    INVARIANT_VIOLATION = "InvariantViolation"
    UNKNOWN_ACTION = "UnknownAction"


class StakingError(Exception):
    """Raised when an operation is rejected and the caller asked for exceptions."""

    def __init__(self, kind: ErrorKind, detail: Optional[str] = None) -> None:
        self.kind = kind
        self.detail = detail
        msg = kind.value if not detail else f"{kind.value}: {detail}"
        super().__init__(msg)


class CustodianError(Exception):
    """Raised by a custodian when a pull/push cannot be fully honoured."""
