from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel

from domain.base_types import AccountId, AssetId, RecalcMode, TransactionId, TxType
from domain.ledger import LedgerTransaction, ledger_sort_key
from domain.transfers import TransferGroup, TransferIssue, TransferMatcher, TransferTolerance

logger = logging.getLogger(__name__)


@dataclass
class Lot:
    quantity_remaining: Decimal
    unit_cost: Decimal | None
    opened_at: datetime
    source_tx_id: TransactionId | None = None

    def split(self, quantity: Decimal) -> Lot:
        return Lot(
            quantity_remaining=quantity,
            unit_cost=self.unit_cost,
            opened_at=self.opened_at,
            source_tx_id=self.source_tx_id,
        )


@dataclass
class CostBasisPosition:
    """FIFO lot state of one (account, asset).

    ``quantity`` follows the ledger. Lots only cover the part of it whose history
    is known; once an outflow outruns the lots ``continuity_broken`` stays set
    until a honoured reset replaces the state.
    """

    account_id: AccountId
    asset_id: AssetId
    quantity: Decimal = Decimal(0)
    lots: deque[Lot] = field(default_factory=deque)
    continuity_broken: bool = False
    realized_gain: Decimal = Decimal(0)

    @property
    def basis_known(self) -> bool:
        return not self.continuity_broken and all(lot.unit_cost is not None for lot in self.lots)

    @property
    def cost_basis(self) -> Decimal | None:
        if not self.basis_known:
            return None
        return sum((lot.quantity_remaining * lot.unit_cost for lot in self.lots if lot.unit_cost is not None), Decimal(0))

    @property
    def unit_cost(self) -> Decimal | None:
        cost_basis = self.cost_basis
        if cost_basis is None or self.quantity <= 0:
            return None
        return cost_basis / self.quantity

    def open_lot(self, lot: Lot) -> None:
        """Insert keeping lots ordered by ``opened_at`` (carried slices keep their original date)."""
        self.quantity += lot.quantity_remaining
        insert_at = None
        for idx, existing in enumerate(self.lots):
            if existing.opened_at > lot.opened_at:
                insert_at = idx
                break

        if insert_at is None:
            self.lots.append(lot)
        else:
            self.lots.insert(insert_at, lot)

    def consume(self, quantity: Decimal) -> tuple[list[Lot], Decimal]:
        """Take ``quantity`` FIFO. Returns the slices taken and the uncovered shortfall."""
        self.quantity -= quantity
        slices: list[Lot] = []
        remaining = quantity
        while remaining > 0 and self.lots:
            lot = self.lots[0]
            take_quantity = min(remaining, lot.quantity_remaining)
            slices.append(lot.split(take_quantity))
            lot.quantity_remaining -= take_quantity
            remaining -= take_quantity
            if lot.quantity_remaining == 0:
                self.lots.popleft()

        if remaining > 0:
            self.continuity_broken = True
        return slices, remaining

    def reset_to(self, lot: Lot | None, quantity: Decimal) -> None:
        self.lots = deque([lot]) if lot is not None else deque()
        self.quantity = quantity
        self.continuity_broken = False


class Disposal(BaseModel):
    tx_id: TransactionId | None
    date_time: datetime
    account_id: AccountId
    asset_id: AssetId
    quantity: Decimal
    cost_basis: Decimal | None
    proceeds: Decimal | None
    gain: Decimal | None


@dataclass
class ReplayResult:
    positions: dict[tuple[AccountId, AssetId], CostBasisPosition]
    diagnostics: list[TransferIssue]
    disposals: list[Disposal]


def slices_cost(slices: list[Lot]) -> Decimal | None:
    if any(lot.unit_cost is None for lot in slices):
        return None
    return sum((lot.quantity_remaining * lot.unit_cost for lot in slices if lot.unit_cost is not None), Decimal(0))


class CostBasisEngine:
    """Replay ledger rows into FIFO cost-basis positions.

    Rows must carry ids (they come from the store). Transfer groups that carry
    basis move lot slices between accounts without realising a gain. An inflow
    with no value on the row opens an unknown-cost lot.
    """

    def __init__(self, *, tolerance: TransferTolerance | None = None) -> None:
        self._matcher = TransferMatcher(tolerance)

    def replay(self, transactions: Iterable[LedgerTransaction], mode: RecalcMode = RecalcMode.PURE) -> ReplayResult:
        txs = sorted(transactions, key=ledger_sort_key)
        groups = self._matcher.group(txs)

        carrying: dict[TransactionId, TransferGroup] = {}
        for group in groups:
            if group.carries_basis:
                for leg_id in group.leg_ids:
                    carrying[leg_id] = group

        positions: dict[tuple[AccountId, AssetId], CostBasisPosition] = {}
        disposals: list[Disposal] = []

        for tx in txs:
            group = carrying.get(tx.id) if tx.id is not None else None
            if group is not None:
                # Legs are in replay order, so the group settles on its last leg.
                if tx is group.legs[-1]:
                    self._carry(group, positions)
                continue

            position = self._position(positions, tx)
            if tx.tx_type == TxType.COST_BASIS_RESET:
                if mode == RecalcMode.HONOR_RESETS:
                    self._apply_reset(position, tx)
            elif tx.tx_type == TxType.RECONCILIATION:
                self._apply_reconciliation(position, tx)
            elif tx.quantity > 0:
                position.open_lot(
                    Lot(
                        quantity_remaining=tx.quantity,
                        unit_cost=self._inflow_unit_cost(tx),
                        opened_at=tx.date_time,
                        source_tx_id=tx.id,
                    )
                )
            else:
                disposals.append(self._dispose(position, tx))

        return ReplayResult(
            positions=positions,
            diagnostics=[group.to_issue() for group in groups if group.issue is not None],
            disposals=disposals,
        )

    def _position(
        self,
        positions: dict[tuple[AccountId, AssetId], CostBasisPosition],
        tx: LedgerTransaction,
    ) -> CostBasisPosition:
        key = (tx.account_id, tx.asset_id)
        position = positions.get(key)
        if position is None:
            position = CostBasisPosition(account_id=tx.account_id, asset_id=tx.asset_id)
            positions[key] = position
        return position

    def _inflow_unit_cost(self, tx: LedgerTransaction) -> Decimal | None:
        value = tx.base_value()
        if value is not None:
            return value / abs(tx.quantity)
        return None

    def _dispose(self, position: CostBasisPosition, tx: LedgerTransaction) -> Disposal:
        quantity = abs(tx.quantity)
        slices, shortfall = position.consume(quantity)
        cost_basis = slices_cost(slices) if shortfall == 0 else None
        proceeds = tx.base_value()
        gain = None
        if cost_basis is not None and proceeds is not None:
            gain = proceeds - cost_basis
            position.realized_gain += gain
        return Disposal(
            tx_id=tx.id,
            date_time=tx.date_time,
            account_id=tx.account_id,
            asset_id=tx.asset_id,
            quantity=quantity,
            cost_basis=cost_basis,
            proceeds=proceeds,
            gain=gain,
        )

    def _apply_reconciliation(self, position: CostBasisPosition, tx: LedgerTransaction) -> None:
        if tx.quantity > 0:
            position.open_lot(
                Lot(quantity_remaining=tx.quantity, unit_cost=Decimal(0), opened_at=tx.date_time, source_tx_id=tx.id)
            )
        else:
            position.consume(abs(tx.quantity))

    def _apply_reset(self, position: CostBasisPosition, tx: LedgerTransaction) -> None:
        checkpoint = tx.checkpoint_quantity or Decimal(0)
        if checkpoint <= 0:
            position.reset_to(None, checkpoint)
            return

        unit_cost = tx.unit_price_in_base
        if unit_cost is None and tx.total_value_in_base is not None:
            unit_cost = abs(tx.total_value_in_base) / checkpoint
        position.reset_to(
            Lot(quantity_remaining=checkpoint, unit_cost=unit_cost, opened_at=tx.date_time, source_tx_id=tx.id),
            checkpoint,
        )

    def _carry(
        self,
        group: TransferGroup,
        positions: dict[tuple[AccountId, AssetId], CostBasisPosition],
    ) -> None:
        carried: deque[Lot] = deque()
        for source in group.sources:
            slices, shortfall = self._position(positions, source).consume(abs(source.quantity))
            carried.extend(slices)
            if shortfall > 0:
                carried.append(
                    Lot(quantity_remaining=shortfall, unit_cost=None, opened_at=source.date_time, source_tx_id=source.id)
                )

        for destination in group.destinations:
            position = self._position(positions, destination)
            needed = destination.quantity
            while needed > 0 and carried:
                lot = carried[0]
                take_quantity = min(needed, lot.quantity_remaining)
                position.open_lot(lot.split(take_quantity))
                lot.quantity_remaining -= take_quantity
                needed -= take_quantity
                if lot.quantity_remaining == 0:
                    carried.popleft()
            if needed > 0:
                position.open_lot(
                    Lot(
                        quantity_remaining=needed,
                        unit_cost=None,
                        opened_at=destination.date_time,
                        source_tx_id=destination.id,
                    )
                )

        if carried:
            logger.debug(
                "Transfer group %s dropped %s %s as fee",
                group.key,
                sum((lot.quantity_remaining for lot in carried), Decimal(0)),
                group.asset_id,
            )
