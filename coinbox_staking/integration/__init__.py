"""
Imperative shell: custodian and transaction adapter.
"""

from .custodian import TableCustodian
from .operations import STAKING_OP_GROUP, StakingOp, create_staking_operation, parse_staking_ops
from .staking_tx import NonceTable, StakingTxConfig, StakingTxResult, apply_staking_ops

__all__ = [
    "TableCustodian",
    "STAKING_OP_GROUP",
    "StakingOp",
    "create_staking_operation",
    "parse_staking_ops",
    "NonceTable",
    "StakingTxConfig",
    "StakingTxResult",
    "apply_staking_ops",
]
