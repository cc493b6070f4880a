"""
Token balance tracking with deterministic ordering.

Implements BalanceTable[AccountId, AssetId] -> Amount. This is the ledger the
table-backed custodian moves staked and reward assets in.
"""

from typing import Dict, Tuple

from ..core.types import AccountId, Amount, AssetId


class BalanceTable:
    """
    Balance table mapping (account, asset) -> amount.

    Note: balances live in a plain dict. Do not rely on dict iteration order
    when hashing; sort keys explicitly (see `coinbox_staking/state/snapshot.py`).
    """

    def __init__(self):
        # Zero balances are never stored.
        self._balances: Dict[Tuple[AccountId, AssetId], Amount] = {}

    def get(self, account: AccountId, asset: AssetId) -> Amount:
        """Balance for (account, asset). Returns 0 if not found."""
        return self._balances.get((account, asset), 0)

    def set(self, account: AccountId, asset: AssetId, amount: Amount) -> None:
        """
        Set balance for (account, asset).

        Raises:
            ValueError: If amount is negative
        """
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TypeError(f"Balance must be an int: {amount!r}")
        if amount < 0:
            raise ValueError(f"Balance cannot be negative: {amount}")
        if amount == 0:
            self._balances.pop((account, asset), None)
        else:
            self._balances[(account, asset)] = amount

    def add(self, account: AccountId, asset: AssetId, delta: Amount) -> None:
        """
        Add delta to balance (delta may be negative).

        Raises:
            ValueError: If resulting balance would be negative
        """
        current = self.get(account, asset)
        new_balance = current + delta
        if new_balance < 0:
            raise ValueError(
                f"Insufficient balance: {current} + {delta} = {new_balance} < 0"
            )
        self.set(account, asset, new_balance)

    def subtract(self, account: AccountId, asset: AssetId, delta: Amount) -> None:
        if delta < 0:
            raise ValueError(f"Delta must be non-negative: {delta}")
        self.add(account, asset, -delta)

    def move(self, asset: AssetId, source: AccountId, destination: AccountId, amount: Amount) -> None:
        """Move `amount` between accounts; all-or-nothing."""
        if amount < 0:
            raise ValueError(f"Amount must be non-negative: {amount}")
        if self.get(source, asset) < amount:
            raise ValueError(f"Insufficient balance: {source} holds {self.get(source, asset)} < {amount}")
        self.subtract(source, asset, amount)
        self.add(destination, asset, amount)

    def copy(self) -> "BalanceTable":
        copied = BalanceTable()
        copied._balances = dict(self._balances)
        return copied

    def restore(self, other: "BalanceTable") -> None:
        """Overwrite this table in place with the contents of `other`."""
        self._balances = dict(other._balances)

    def get_all_balances(self) -> Dict[Tuple[AccountId, AssetId], Amount]:
        return dict(self._balances)

    def get_balances_for_asset(self, asset: AssetId) -> Dict[AccountId, Amount]:
        result = {}
        for (account, a), amount in self._balances.items():
            if a == asset:
                result[account] = amount
        return result

    def total_supply(self, asset: AssetId) -> Amount:
        return sum(self.get_balances_for_asset(asset).values())

    def __repr__(self) -> str:
        return f"BalanceTable({len(self._balances)} entries)"
