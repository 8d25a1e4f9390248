from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Iterable

from domain.base_types import AccountId, AssetId
from domain.ledger import LedgerTransaction


class NegativeBalanceError(Exception):
    def __init__(
        self,
        *,
        asset_id: str,
        account_id: str,
        attempted_quantity: Decimal,
        available_balance: Decimal,
    ) -> None:
        self.asset_id = asset_id
        self.account_id = account_id
        self.attempted_quantity = attempted_quantity
        self.available_balance = available_balance
        message = (
            f"Insufficient balance for asset={asset_id} account={account_id} "
            f"attempted={attempted_quantity} available={available_balance}"
        )
        super().__init__(message)


class BalanceTracker:
    """Running quantity per (account, asset).

    Ledgers can legitimately go short (hedges, late imports), so negative balances
    are only rejected when ``strict`` is set.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self._strict = strict
        self._balances: dict[AssetId, dict[AccountId, Decimal]] = defaultdict(lambda: defaultdict(lambda: Decimal(0)))

    def apply_movement(self, *, asset_id: AssetId, account_id: AccountId, quantity: Decimal) -> None:
        current_balance = self._balances[asset_id][account_id]
        new_balance = current_balance + quantity
        if self._strict and new_balance < 0:
            raise NegativeBalanceError(
                asset_id=asset_id,
                account_id=account_id,
                attempted_quantity=quantity,
                available_balance=current_balance,
            )
        self._balances[asset_id][account_id] = new_balance

    def apply_transactions(self, txs: Iterable[LedgerTransaction]) -> None:
        for tx in txs:
            self.apply_movement(asset_id=tx.asset_id, account_id=tx.account_id, quantity=tx.quantity)

    def get_balance(self, *, asset_id: AssetId, account_id: AccountId) -> Decimal:
        return self._balances.get(asset_id, {}).get(account_id, Decimal(0))

    def positions(self) -> dict[tuple[AccountId, AssetId], Decimal]:
        return {
            (account_id, asset_id): balance
            for asset_id, account_balances in self._balances.items()
            for account_id, balance in account_balances.items()
        }

    def accounts_holding(self, asset_id: AssetId) -> dict[AccountId, Decimal]:
        return {
            account_id: balance
            for account_id, balance in self._balances.get(asset_id, {}).items()
            if balance != 0
        }

    def asset_balances_for(self, account_ids: set[AccountId] | None = None) -> dict[AssetId, Decimal]:
        totals: dict[AssetId, Decimal] = {}
        for asset_id, account_balances in self._balances.items():
            total = sum(
                (
                    balance
                    for account_id, balance in account_balances.items()
                    if account_ids is None or account_id in account_ids
                ),
                start=Decimal(0),
            )
            totals[asset_id] = total
        return totals
