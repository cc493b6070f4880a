"""
Token custodian backed by a `BalanceTable`.

The engine hands value movement to a custodian after its own state is updated.
A custodian call either moves the full amount or raises `CustodianError`
without touching any balance.

Authorization is an allowance: `source` must have approved the spender (the
engine's custody account) for at least `amount` of the asset before a pull.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from ..core.errors import CustodianError
from ..core.types import AccountId, Amount, AssetId, is_amount, is_null_account
from ..state.balances import BalanceTable

log = logging.getLogger(__name__)

CustodianCheckpoint = Tuple[BalanceTable, Dict[Tuple[AccountId, AccountId, AssetId], Amount]]


class TableCustodian:
    def __init__(
        self,
        balances: Optional[BalanceTable] = None,
        *,
        custody_account: AccountId = "coinbox:staking:custody",
        rewards_vault: Optional[AccountId] = None,
        require_allowance: bool = True,
    ) -> None:
        if is_null_account(custody_account):
            raise ValueError("custody_account must be a non-null account")
        self.balances = balances if balances is not None else BalanceTable()
        self.custody_account = custody_account
        self.rewards_vault = rewards_vault
        self.require_allowance = require_allowance
        self._allowances: Dict[Tuple[AccountId, AccountId, AssetId], Amount] = {}

    # -- allowances -----------------------------------------------------------

    def approve(self, owner: AccountId, spender: AccountId, asset: AssetId, amount: Amount) -> None:
        if not is_amount(amount) or amount < 0:
            raise ValueError(f"allowance must be a non-negative int: {amount!r}")
        if amount == 0:
            self._allowances.pop((owner, spender, asset), None)
        else:
            self._allowances[(owner, spender, asset)] = amount

    def allowance(self, owner: AccountId, spender: AccountId, asset: AssetId) -> Amount:
        return self._allowances.get((owner, spender, asset), 0)

    # -- transfers ------------------------------------------------------------

    def pull(self, asset: AssetId, source: AccountId, destination: AccountId, amount: Amount) -> None:
        """Move `amount` of `asset` from `source` into `destination` (custody)."""
        self._require_amount(amount)
        if self.require_allowance and source != destination:
            allowed = self.allowance(source, destination, asset)
            if allowed < amount:
                raise CustodianError(f"allowance {allowed} < {amount} for {source}")
        available = self.balances.get(source, asset)
        if available < amount:
            raise CustodianError(f"{source} holds {available} < {amount} of {asset}")

        if self.require_allowance and source != destination:
            self.approve(source, destination, asset, self.allowance(source, destination, asset) - amount)
        self.balances.move(asset, source, destination, amount)
        log.debug("pulled %d %s from %s", amount, asset, source)

    def push(self, asset: AssetId, destination: AccountId, amount: Amount, *, source: Optional[AccountId] = None) -> None:
        """Send `amount` of `asset` to `destination` from `source` (default: rewards vault)."""
        self._require_amount(amount)
        payer = source if source is not None else self.rewards_vault
        if payer is None:
            raise CustodianError("no rewards vault configured")
        available = self.balances.get(payer, asset)
        if available < amount:
            raise CustodianError(f"{payer} holds {available} < {amount} of {asset}")
        self.balances.move(asset, payer, destination, amount)
        log.debug("pushed %d %s to %s", amount, asset, destination)

    def balance_of(self, account: AccountId, asset: AssetId) -> Amount:
        return self.balances.get(account, asset)

    # -- batch support --------------------------------------------------------

    def checkpoint(self) -> CustodianCheckpoint:
        return self.balances.copy(), dict(self._allowances)

    def rollback(self, checkpoint: CustodianCheckpoint) -> None:
        balances, allowances = checkpoint
        self.balances.restore(balances)
        self._allowances = dict(allowances)

    @staticmethod
    def _require_amount(amount: Amount) -> None:
        if not is_amount(amount) or amount < 0:
            raise CustodianError(f"amount must be a non-negative int: {amount!r}")
