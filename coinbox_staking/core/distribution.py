"""Distribution Ledger: per-asset reward index and per-account snapshots.

Pure accounting. The ledger never moves value; it only tells the caller how
much an account accrued since its last snapshot. The stake engine owns an
instance and calls it explicitly.

Stores:
- `_assets`: asset -> AssetDistribution
- `_user_index`: (asset, account) -> index snapshot
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Dict, Optional, Sequence, Tuple

from .clock import Clock
from .errors import ErrorKind
from .math import compute_asset_index, compute_rewards
from .types import (
    AccountId,
    AssetDistribution,
    AssetId,
    DistributionConfig,
    Event,
    StakeResult,
    StakingEvent,
    is_amount,
    is_null_account,
)

log = logging.getLogger(__name__)

EventSink = Callable[[StakingEvent], None]
LedgerCheckpoint = Tuple[Dict[AssetId, AssetDistribution], Dict[Tuple[AssetId, AccountId], int]]


class DistributionLedger:
    def __init__(
        self,
        clock: Clock,
        *,
        emission_controller: AccountId,
        distribution_end: int,
        emit: Optional[EventSink] = None,
    ) -> None:
        if is_null_account(emission_controller):
            raise ValueError("emission_controller must be a non-null account")
        if not is_amount(distribution_end) or distribution_end < 0:
            raise ValueError(f"distribution_end must be a non-negative int: {distribution_end!r}")
        self._clock = clock
        self._emission_controller = emission_controller
        self._distribution_end = distribution_end
        self._emit = emit
        self._assets: Dict[AssetId, AssetDistribution] = {}
        self._user_index: Dict[Tuple[AssetId, AccountId], int] = {}

    # -- read accessors -------------------------------------------------------

    @property
    def emission_controller(self) -> AccountId:
        return self._emission_controller

    @property
    def distribution_end(self) -> int:
        return self._distribution_end

    def get_distribution(self, asset: AssetId) -> AssetDistribution:
        """Stored record for `asset`; an all-zero record if never touched."""
        return self._assets.get(asset, AssetDistribution())

    def get_user_index(self, account: AccountId, asset: AssetId) -> int:
        """Stored snapshot. Never triggers accrual."""
        return self._user_index.get((asset, account), 0)

    def distributions(self) -> Dict[AssetId, AssetDistribution]:
        return dict(self._assets)

    def user_indexes(self) -> Dict[Tuple[AssetId, AccountId], int]:
        return dict(self._user_index)

    # -- transactions ---------------------------------------------------------

    def checkpoint(self) -> LedgerCheckpoint:
        # Records are immutable, so shallow copies are sufficient.
        return dict(self._assets), dict(self._user_index)

    def rollback(self, checkpoint: LedgerCheckpoint) -> None:
        assets, user_index = checkpoint
        self._assets = dict(assets)
        self._user_index = dict(user_index)

    def load(
        self,
        assets: Dict[AssetId, AssetDistribution],
        user_index: Dict[Tuple[AssetId, AccountId], int],
    ) -> None:
        """Replace the stores wholesale (snapshot restore)."""
        self._assets = dict(assets)
        self._user_index = dict(user_index)

    # -- emission controller --------------------------------------------------

    def configure_distribution(self, caller: AccountId, entries: Sequence[DistributionConfig]) -> StakeResult:
        """Apply emission-rate changes in submitted order.

        Authorization is checked once for the whole batch. Each entry first
        freezes accrual at the old rate (using the reported total staked), then
        overwrites the rate.
        """
        if caller != self._emission_controller:
            return StakeResult.reject(ErrorKind.UNAUTHORIZED, "caller is not the emission controller")

        for i, entry in enumerate(entries):
            if not isinstance(entry, DistributionConfig):
                return StakeResult.reject(ErrorKind.INVALID_AMOUNT, f"entry {i} is not a DistributionConfig")
            if is_null_account(entry.asset):
                return StakeResult.reject(ErrorKind.INVALID_ADDRESS, f"entry {i} has a null asset")
            for name in ("emission_per_second", "total_staked"):
                value = getattr(entry, name)
                if not is_amount(value) or value < 0:
                    return StakeResult.reject(ErrorKind.INVALID_AMOUNT, f"entry {i} has invalid {name}")

        now = self._clock.now()
        for entry in entries:
            self.update_index(entry.asset, entry.total_staked)
            self._assets[entry.asset] = replace(
                self.get_distribution(entry.asset),
                emission_per_second=entry.emission_per_second,
            )
            log.info("emission for %s set to %d/s", entry.asset, entry.emission_per_second)
            self._publish(
                Event.ASSET_CONFIG_UPDATED,
                now,
                asset=entry.asset,
                emission_per_second=entry.emission_per_second,
            )
        return StakeResult(ok=True)

    # -- accrual --------------------------------------------------------------

    def update_index(self, asset: AssetId, total_staked: int) -> int:
        """Bring the asset index up to now and return it.

        A second call at the same timestamp is a no-op. `last_update_timestamp`
        advances even when nothing accrues, so an interval with zero stake is
        never caught up later.
        """
        now = self._clock.now()
        dist = self.get_distribution(asset)
        if now == dist.last_update_timestamp and asset in self._assets:
            return dist.index

        new_index = compute_asset_index(
            dist.index,
            dist.emission_per_second,
            dist.last_update_timestamp,
            total_staked,
            now,
            self._distribution_end,
        )
        self._assets[asset] = replace(dist, index=new_index, last_update_timestamp=now)
        if new_index != dist.index:
            self._publish(Event.ASSET_INDEX_UPDATED, now, asset=asset, index=new_index)
        return new_index

    def update_account_snapshot(
        self,
        account: AccountId,
        asset: AssetId,
        staked_by_account: int,
        total_staked: int,
    ) -> int:
        """Reconcile `account` against the asset index; return the accrual."""
        old_index = self.get_user_index(account, asset)
        new_index = self.update_index(asset, total_staked)
        if old_index == new_index:
            return 0

        accrued = 0
        if staked_by_account != 0:
            accrued = compute_rewards(staked_by_account, new_index, old_index)
        self._user_index[(asset, account)] = new_index
        self._publish(
            Event.USER_INDEX_UPDATED,
            self._clock.now(),
            account=account,
            asset=asset,
            index=new_index,
        )
        return accrued

    def preview_accrued(
        self,
        account: AccountId,
        asset: AssetId,
        staked_by_account: int,
        total_staked: int,
    ) -> int:
        """What `update_account_snapshot` would return now, without mutating."""
        dist = self.get_distribution(asset)
        index = compute_asset_index(
            dist.index,
            dist.emission_per_second,
            dist.last_update_timestamp,
            total_staked,
            self._clock.now(),
            self._distribution_end,
        )
        if staked_by_account == 0:
            return 0
        return compute_rewards(staked_by_account, index, self.get_user_index(account, asset))

    def _publish(self, event: Event, timestamp: int, **data) -> None:
        if self._emit is not None:
            self._emit(StakingEvent(event=event, timestamp=timestamp, data=data))
