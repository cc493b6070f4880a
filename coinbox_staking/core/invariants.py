"""Invariant checkers for the staking engine.

Each function returns True when the invariant holds; `check_all()` returns the
names of the violated invariants (empty = all pass). The engine runs these on
the post-state of every operation and rolls back on any violation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, List, Mapping, Optional

from .types import AssetDistribution, AssetId

if TYPE_CHECKING:
    from .engine import StakeEngine


def inv_total_staked_matches(engine: "StakeEngine") -> bool:
    return engine.total_staked == sum(a.staked_balance for a in engine.accounts().values())


def inv_user_index_bounded(engine: "StakeEngine") -> bool:
    ledger = engine.ledger
    for (asset, _account), index in ledger.user_indexes().items():
        if index > ledger.get_distribution(asset).index:
            return False
    return True


def inv_cooldown_not_from_future(engine: "StakeEngine") -> bool:
    now = engine.clock.now()
    return all(a.cooldown_timestamp <= now for a in engine.accounts().values())


def inv_last_update_not_from_future(engine: "StakeEngine") -> bool:
    now = engine.clock.now()
    return all(d.last_update_timestamp <= now for d in engine.ledger.distributions().values())


_CHECKS: dict[str, Callable[["StakeEngine"], bool]] = {
    "total_staked_matches": inv_total_staked_matches,
    "user_index_bounded": inv_user_index_bounded,
    "cooldown_not_from_future": inv_cooldown_not_from_future,
    "last_update_not_from_future": inv_last_update_not_from_future,
}


def index_non_decreasing(
    previous: Mapping[AssetId, AssetDistribution],
    current: Mapping[AssetId, AssetDistribution],
) -> bool:
    for asset, before in previous.items():
        after = current.get(asset)
        if after is None:
            return False
        if after.index < before.index or after.last_update_timestamp < before.last_update_timestamp:
            return False
    return True


def check_all(
    engine: "StakeEngine",
    *,
    previous_distributions: Optional[Mapping[AssetId, AssetDistribution]] = None,
) -> List[str]:
    violations = [name for name, fn in _CHECKS.items() if not fn(engine)]
    if previous_distributions is not None:
        if not index_non_decreasing(previous_distributions, engine.ledger.distributions()):
            violations.append("index_non_decreasing")
    return violations
