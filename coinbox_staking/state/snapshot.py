"""
Engine snapshots and deterministic state root hashing (v1).

`engine_to_dict` / `engine_from_dict` export and restore the engine's keyed
stores as plain JSON-compatible data. `compute_staking_state_root` hashes the
same state with a domain-separated, sorted, length-prefixed encoding so two
engines in the same logical state always produce the same root.

Round-trip property (tested): restoring an export yields the same state root.
"""

from __future__ import annotations

import hashlib
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Union

from ..core.clock import Clock
from ..core.engine import Custodian, StakeEngine
from ..core.errors import ErrorKind, StakingError
from ..core.types import AssetDistribution, StakerAccount


SNAPSHOT_VERSION = 1
STATE_ROOT_VERSION = 1

_ROLE_KEYS = ("staked_asset", "reward_asset", "rewards_vault", "emission_controller", "owner")


def _require_uint(value: Any, *, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValueError(f"{name} must be a non-negative int, got {value!r}")
    return int(value)


def _require_str(value: Any, *, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{name} must be a non-empty string, got {value!r}")
    return value


def engine_to_dict(engine: StakeEngine) -> Dict[str, Any]:
    if not engine.initialized:
        raise StakingError(ErrorKind.NOT_INITIALIZED)
    ledger = engine.ledger
    return {
        "version": SNAPSHOT_VERSION,
        "config": {
            "staked_asset": engine.staked_asset,
            "reward_asset": engine.reward_asset,
            "rewards_vault": engine.rewards_vault,
            "emission_controller": engine.emission_controller,
            "owner": engine.owner,
            "cooldown_seconds": engine.cooldown_seconds,
            "unstake_window": engine.unstake_window,
            "claim_window_mode": engine.claim_window_mode.value,
            "distribution_end": engine.distribution_end,
        },
        "accounts": {
            account: {
                "staked_balance": acct.staked_balance,
                "claimable_rewards": acct.claimable_rewards,
                "cooldown_timestamp": acct.cooldown_timestamp,
            }
            for account, acct in sorted(engine.accounts().items())
        },
        "distributions": {
            asset: {
                "emission_per_second": dist.emission_per_second,
                "last_update_timestamp": dist.last_update_timestamp,
                "index": dist.index,
            }
            for asset, dist in sorted(ledger.distributions().items())
        },
        "user_index": [
            [asset, account, index]
            for (asset, account), index in sorted(ledger.user_indexes().items())
        ],
    }


def engine_from_dict(
    data: Mapping[str, Any],
    custodian: Custodian,
    clock: Optional[Clock] = None,
    *,
    check_invariants: bool = True,
) -> StakeEngine:
    """Rebuild an engine from `engine_to_dict` output. Raises on malformed input."""
    if not isinstance(data, Mapping):
        raise ValueError("snapshot must be an object")
    if data.get("version") != SNAPSHOT_VERSION:
        raise ValueError(f"unsupported snapshot version: {data.get('version')!r}")
    cfg = data.get("config")
    if not isinstance(cfg, Mapping):
        raise ValueError("snapshot.config must be an object")

    engine = StakeEngine(custodian, clock, check_invariants=check_invariants)
    result = engine.initialize(
        **{k: _require_str(cfg.get(k), name=k) for k in _ROLE_KEYS},
        cooldown_seconds=_require_uint(cfg.get("cooldown_seconds"), name="cooldown_seconds"),
        unstake_window=_require_uint(cfg.get("unstake_window"), name="unstake_window"),
        distribution_duration=0,
        claim_window_mode=cfg.get("claim_window_mode", "literal"),
    )
    if not result.ok:
        raise StakingError(result.error, result.detail)

    accounts = {}
    for account, raw in dict(data.get("accounts") or {}).items():
        accounts[str(account)] = StakerAccount(
            staked_balance=_require_uint(raw.get("staked_balance"), name="staked_balance"),
            claimable_rewards=_require_uint(raw.get("claimable_rewards"), name="claimable_rewards"),
            cooldown_timestamp=_require_uint(raw.get("cooldown_timestamp"), name="cooldown_timestamp"),
        )
    distributions = {}
    for asset, raw in dict(data.get("distributions") or {}).items():
        distributions[str(asset)] = AssetDistribution(
            emission_per_second=_require_uint(raw.get("emission_per_second"), name="emission_per_second"),
            last_update_timestamp=_require_uint(raw.get("last_update_timestamp"), name="last_update_timestamp"),
            index=_require_uint(raw.get("index"), name="index"),
        )
    user_index = {}
    for entry in list(data.get("user_index") or []):
        if not isinstance(entry, (list, tuple)) or len(entry) != 3:
            raise ValueError("user_index entries must be [asset, account, index]")
        asset, account, index = entry
        user_index[(str(asset), str(account))] = _require_uint(index, name="user_index")

    engine.restore(
        distribution_end=_require_uint(cfg.get("distribution_end"), name="distribution_end"),
        accounts=accounts,
        distributions=distributions,
        user_index=user_index,
    )
    return engine


_Field = Union[str, int]


def _varint(value: int) -> bytes:
    """Unsigned LEB128."""
    n = _require_uint(value, name="varint")
    out = bytearray()
    while n > 0x7F:
        out.append((n & 0x7F) | 0x80)
        n >>= 7
    out.append(n)
    return bytes(out)


def _field(value: _Field) -> bytes:
    # Identifiers are length-prefixed UTF-8; quantities are bare varints.
    if isinstance(value, str):
        raw = value.encode("utf-8")
        return _varint(len(raw)) + raw
    return _varint(value)


def _section(tag: bytes, rows: Iterable[Sequence[_Field]]) -> bytes:
    rows = list(rows)
    body = _varint(len(rows)) + b"".join(_field(v) for row in rows for v in row)
    return tag + _varint(len(body)) + body


def compute_staking_state_root(engine: StakeEngine) -> str:
    """
    Deterministic state root for the staking engine.

    Layout: a versioned tag, then four tagged sections (header, accounts,
    distributions, user indexes). Each section is a row count followed by its
    rows in sorted key order. Returns a 0x-prefixed sha256 digest. The
    committed event log is not part of the root.
    """
    if not isinstance(engine, StakeEngine):
        raise TypeError("engine must be a StakeEngine")
    if not engine.initialized:
        raise StakingError(ErrorKind.NOT_INITIALIZED)

    ledger = engine.ledger
    header = [(engine.total_staked, engine.distribution_end, engine.cooldown_seconds, engine.unstake_window)]
    accounts = [
        (account, acct.staked_balance, acct.claimable_rewards, acct.cooldown_timestamp)
        for account, acct in sorted(engine.accounts().items())
    ]
    distributions = [
        (asset, dist.emission_per_second, dist.last_update_timestamp, dist.index)
        for asset, dist in sorted(ledger.distributions().items())
    ]
    user_index = [(asset, account, index) for (asset, account), index in sorted(ledger.user_indexes().items())]

    digest = hashlib.sha256(b"coinbox-staking/state-root/v%d\x00" % STATE_ROOT_VERSION)
    digest.update(_section(b"HDR", header))
    digest.update(_section(b"ACC", accounts))
    digest.update(_section(b"DST", distributions))
    digest.update(_section(b"UIX", user_index))
    return "0x" + digest.hexdigest()
