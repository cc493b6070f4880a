"""
CoinBox staking: reward-distribution accounting for a token-staking pool.
"""

from .config import StakingConfig, build_engine, load_config
from .core import (
    DistributionLedger,
    ErrorKind,
    ManualClock,
    StakeEngine,
    StakeResult,
    StakingError,
)

__all__ = [
    "StakingConfig",
    "build_engine",
    "load_config",
    "DistributionLedger",
    "ErrorKind",
    "ManualClock",
    "StakeEngine",
    "StakeResult",
    "StakingError",
]
