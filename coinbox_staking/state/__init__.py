"""
State tables, snapshots and the deterministic state root for the staking engine
"""

from .balances import BalanceTable
from .snapshot import compute_staking_state_root, engine_from_dict, engine_to_dict

__all__ = [
    "BalanceTable",
    "compute_staking_state_root",
    "engine_from_dict",
    "engine_to_dict",
]
