"""
Operation group handler for staking transactions.

Parses operation group "6" (staking) into `StakingOp` values. Parsing is
strict: unknown modules, versions, actions or fields are rejected before
anything touches the engine.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..core.types import Action


STAKING_OP_GROUP = "6"
STAKING_OP_MODULE = "CoinBoxStake"
STAKING_OP_VERSION = "0.1"

_ENVELOPE_KEYS = frozenset({"module", "version", "action", "signature", "nonce", "deadline"})

# action -> (required fields, optional fields)
_ACTION_FIELDS: Dict[Action, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    Action.STAKE: (("amount",), ("account",)),
    Action.START_COOLDOWN: ((), ("account",)),
    Action.CLAIM: (("amount",), ("account",)),
    Action.TRANSFER: (("to", "amount"), ("from",)),
    Action.REDEEM: (("amount",), ()),
    Action.CONFIGURE_DISTRIBUTION: (("entries",), ()),
}

_ENTRY_KEYS = frozenset({"asset", "emission_per_second", "total_staked"})


def _require_str(value: Any, *, name: str, non_empty: bool = True, max_len: int = 4096) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    if non_empty and not value:
        raise ValueError(f"{name} must be non-empty")
    if max_len > 0 and len(value) > max_len:
        raise ValueError(f"{name} too large")
    return value


def _require_int(value: Any, *, name: str, non_negative: bool = False) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{name} must be an int")
    if non_negative and value < 0:
        raise ValueError(f"{name} must be non-negative")
    return int(value)


def _optional_int(value: Any, *, name: str, non_negative: bool = False) -> Optional[int]:
    if value is None:
        return None
    return _require_int(value, name=name, non_negative=non_negative)


def _encoded_size(data: Any, *, max_bytes: int) -> int:
    """UTF-8 size of an op as compact sorted JSON, bounded by `max_bytes`."""
    try:
        text = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        size = len(text.encode("utf-8"))
    except UnicodeEncodeError as exc:
        raise ValueError("op contains unencodable text") from exc
    if size > max_bytes:
        raise ValueError(f"op is {size} bytes, over max_op_bytes={max_bytes}")
    return size


@dataclass(frozen=True)
class StakingOp:
    """A parsed staking operation plus its optional authorization envelope."""

    action: Action
    fields: Dict[str, Any]
    raw: Dict[str, Any] = field(repr=False, default_factory=dict)
    signature: Optional[str] = None
    nonce: Optional[int] = None
    deadline: Optional[int] = None


def _parse_entries(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        raise ValueError("entries must be a list")
    out: List[Dict[str, Any]] = []
    for i, entry in enumerate(value):
        if not isinstance(entry, Mapping):
            raise ValueError(f"entries[{i}] must be an object")
        extra = set(entry.keys()) - _ENTRY_KEYS
        if extra:
            raise ValueError(f"entries[{i}] has unknown fields")
        out.append(
            {
                "asset": _require_str(entry.get("asset"), name=f"entries[{i}].asset", max_len=256),
                "emission_per_second": _require_int(
                    entry.get("emission_per_second"), name=f"entries[{i}].emission_per_second", non_negative=True
                ),
                "total_staked": _require_int(
                    entry.get("total_staked"), name=f"entries[{i}].total_staked", non_negative=True
                ),
            }
        )
    return out


def _parse_op(data: Any) -> StakingOp:
    if not isinstance(data, Mapping):
        raise ValueError(f"op must be an object, got {type(data)}")
    for k in data.keys():
        if not isinstance(k, str):
            raise ValueError("op keys must be strings")

    if data.get("module") != STAKING_OP_MODULE:
        raise ValueError(f"module must be {STAKING_OP_MODULE!r}")
    if data.get("version") != STAKING_OP_VERSION:
        raise ValueError(f"unsupported version: {data.get('version')!r}")
    action_name = _require_str(data.get("action"), name="action", max_len=64)
    try:
        action = Action(action_name)
    except ValueError as exc:
        raise ValueError(f"unknown action: {action_name}") from exc

    required, optional = _ACTION_FIELDS[action]
    allowed = set(required) | set(optional) | _ENVELOPE_KEYS
    extra = set(data.keys()) - allowed
    if extra:
        raise ValueError(f"{action_name} has unknown fields: {', '.join(sorted(extra))}")

    fields: Dict[str, Any] = {}
    for name in required + optional:
        if name not in data:
            if name in required:
                raise ValueError(f"{action_name} missing field: {name}")
            continue
        value = data[name]
        if name == "amount":
            fields[name] = _require_int(value, name=name, non_negative=True)
        elif name == "entries":
            fields[name] = _parse_entries(value)
        else:
            fields[name] = _require_str(value, name=name, max_len=512)

    signature = data.get("signature")
    if signature is not None:
        signature = _require_str(signature, name="signature", max_len=512)

    return StakingOp(
        action=action,
        fields=fields,
        raw=dict(data),
        signature=signature,
        nonce=_optional_int(data.get("nonce"), name="nonce", non_negative=True),
        deadline=_optional_int(data.get("deadline"), name="deadline", non_negative=True),
    )


def parse_staking_ops(
    operations: Mapping[str, Any],
    *,
    max_ops: int = 256,
    max_op_bytes: int = 64_000,
    max_total_ops_bytes: int = 512_000,
) -> List[StakingOp]:
    """
    Parse staking operations from operations["6"].

    Raises:
        ValueError: If the group or any op is malformed or over the size limits
    """
    if not isinstance(operations, Mapping):
        raise ValueError(f"operations must be an object, got {type(operations)}")

    raw = operations.get(STAKING_OP_GROUP)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"operations['{STAKING_OP_GROUP}'] must be a list")
    if len(raw) > max_ops:
        raise ValueError(f"too many staking ops: {len(raw)} > {max_ops}")

    ops: List[StakingOp] = []
    total_bytes = 0
    for i, data in enumerate(raw):
        try:
            total_bytes += _encoded_size(data, max_bytes=max_op_bytes)
            if total_bytes > max_total_ops_bytes:
                raise ValueError("staking ops exceed max_total_ops_bytes")
            ops.append(_parse_op(data))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Failed to parse staking op {i}: {e}") from e
    return ops


def create_staking_operation(op: Mapping[str, Any]) -> Dict[str, Any]:
    """Wrap a single op dict (module/version filled in) as an operations group."""
    body = {"module": STAKING_OP_MODULE, "version": STAKING_OP_VERSION}
    body.update(op)
    return {STAKING_OP_GROUP: [body]}
