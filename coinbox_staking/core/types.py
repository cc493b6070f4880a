"""Data types for the staking reward engine.

All records are frozen dataclasses (immutable); the stores that own them swap
whole records on update.

Units/conventions:
- `index` values are reward-per-staked-unit scaled by `PRECISION_FACTOR`.
- `emission_per_second` is reward-asset units per second for the whole pool.
- timestamps are integer seconds from the engine clock; 0 means "unset".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Any, Mapping, Optional, Tuple

from .errors import ErrorKind

AccountId = str
AssetId = str
Amount = int

PRECISION_FACTOR: int = 10**18

# Null identity (20-byte zero address).
ZERO_ACCOUNT: AccountId = "0x" + "00" * 20


def is_null_account(account: Optional[AccountId]) -> bool:
    """True for None, the empty string and the zero address."""
    if account is None:
        return True
    if not isinstance(account, str):
        return True
    return account.strip() == "" or account.lower() == ZERO_ACCOUNT


def is_amount(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class AssetDistribution:
    """Reward-index state for one tracked asset."""

    emission_per_second: int = 0
    last_update_timestamp: int = 0
    index: int = 0

    def __post_init__(self) -> None:
        if self.emission_per_second < 0:
            raise ValueError(f"emission_per_second must be non-negative: {self.emission_per_second}")
        if self.last_update_timestamp < 0:
            raise ValueError(f"last_update_timestamp must be non-negative: {self.last_update_timestamp}")
        if self.index < 0:
            raise ValueError(f"index must be non-negative: {self.index}")


@dataclass(frozen=True)
class StakerAccount:
    """Per-account staking position."""

    staked_balance: int = 0
    claimable_rewards: int = 0
    cooldown_timestamp: int = 0

    def __post_init__(self) -> None:
        if self.staked_balance < 0:
            raise ValueError(f"staked_balance must be non-negative: {self.staked_balance}")
        if self.claimable_rewards < 0:
            raise ValueError(f"claimable_rewards must be non-negative: {self.claimable_rewards}")
        if self.cooldown_timestamp < 0:
            raise ValueError(f"cooldown_timestamp must be non-negative: {self.cooldown_timestamp}")


@dataclass(frozen=True)
class DistributionConfig:
    """One entry of an emission reconfiguration batch.

    `total_staked` is the total the Emission Controller reports for the asset;
    it is used as-submitted to freeze accrual up to the reconfiguration.
    """

    asset: AssetId
    emission_per_second: int
    total_staked: int


@unique
class Event(Enum):
    ASSET_CONFIG_UPDATED = "AssetConfigUpdated"
    ASSET_INDEX_UPDATED = "AssetIndexUpdated"
    USER_INDEX_UPDATED = "UserIndexUpdated"
    STAKED = "Staked"
    REWARDS_ACCRUED = "RewardsAccrued"
    REWARDS_CLAIMED = "RewardsClaimed"
    COOLDOWN = "Cooldown"
    STAKE_TRANSFERRED = "StakeTransferred"
    REDEEMED = "Redeemed"
    INITIALIZED = "Initialized"


@dataclass(frozen=True)
class StakingEvent:
    event: Event
    timestamp: int
    data: Mapping[str, Any] = field(default_factory=dict)


@unique
class Action(Enum):
    """One member per public engine operation."""
    STAKE = "stake"
    START_COOLDOWN = "start_cooldown"
    CLAIM = "claim"
    TRANSFER = "transfer"
    REDEEM = "redeem"
    CONFIGURE_DISTRIBUTION = "configure_distribution"


@unique
class CooldownPhase(Enum):
    IDLE = "idle"
    COOLING = "cooling"
    CLAIMABLE = "claimable"
    EXPIRED = "expired"


@unique
class ClaimWindowMode(Enum):
    # now - start + COOLDOWN <= WINDOW, exactly as the protocol states it.
    LITERAL = "literal"
    # now - start - COOLDOWN <= WINDOW (time since maturity).
    MATURED = "matured"


@dataclass(frozen=True)
class StakeCommand:
    action: Action
    args: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StakeResult:
    """Result of a single engine operation.

    `amount` carries the operation's value outcome where it has one: the amount
    staked or transferred, or what was actually claimed or redeemed.
    """

    ok: bool
    error: Optional[ErrorKind] = None
    amount: int = 0
    events: Tuple[StakingEvent, ...] = ()
    detail: Optional[str] = None

    @classmethod
    def reject(cls, error: ErrorKind, detail: Optional[str] = None) -> "StakeResult":
        return cls(ok=False, error=error, detail=detail)
