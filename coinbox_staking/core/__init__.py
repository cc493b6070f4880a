"""
Staking core: reward index ledger, stake engine and cooldown state machine.

Public API:
- `StakeEngine(custodian, clock)` then `engine.initialize(...)`
- `engine.stake / start_cooldown / claim / transfer / redeem / configure_distribution`
- `engine.execute(StakeCommand)` / `engine.execute_or_raise(...)`
"""

from .clock import Clock, ManualClock, SystemClock
from .cooldown import check_claim_window, cooldown_phase, next_cooldown_timestamp
from .distribution import DistributionLedger
from .engine import Custodian, StakeEngine
from .errors import CustodianError, ErrorKind, StakingError
from .invariants import check_all
from .math import compute_asset_index, compute_rewards
from .types import (
    PRECISION_FACTOR,
    ZERO_ACCOUNT,
    Action,
    AssetDistribution,
    ClaimWindowMode,
    CooldownPhase,
    DistributionConfig,
    Event,
    StakeCommand,
    StakeResult,
    StakerAccount,
    StakingEvent,
)

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "check_claim_window",
    "cooldown_phase",
    "next_cooldown_timestamp",
    "DistributionLedger",
    "Custodian",
    "StakeEngine",
    "CustodianError",
    "ErrorKind",
    "StakingError",
    "check_all",
    "compute_asset_index",
    "compute_rewards",
    "PRECISION_FACTOR",
    "ZERO_ACCOUNT",
    "Action",
    "AssetDistribution",
    "ClaimWindowMode",
    "CooldownPhase",
    "DistributionConfig",
    "Event",
    "StakeCommand",
    "StakeResult",
    "StakerAccount",
    "StakingEvent",
]
