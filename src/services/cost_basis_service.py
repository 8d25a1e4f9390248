from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from time import perf_counter

from pydantic import BaseModel, Field

from domain.balance_tracker import BalanceTracker
from domain.base_types import AccountId, AssetId, RecalcMode, TxType
from domain.cost_basis import CostBasisEngine
from domain.errors import NotFoundError, ValidationError
from domain.ledger import LedgerTransaction
from domain.store import AccountRegistry, AssetRegistry, LedgerStore
from domain.transfers import TransferIssue
from utils.time_utils import parse_as_of

logger = logging.getLogger(__name__)

RECALC_REFERENCE_PREFIX = "RECALC:"
ALLOCATION_QUANTUM = Decimal("0.000001")


class RecalcResult(BaseModel):
    as_of: datetime
    mode: RecalcMode
    external_reference: str
    created: int
    skipped_unknown: int = Field(serialization_alias="skippedUnknown")
    skipped_zero_quantity: int = Field(serialization_alias="skippedZeroQuantity")
    diagnostics: list[TransferIssue]


class ResetResult(BaseModel):
    asset_id: AssetId
    date_time: datetime
    created: int
    rows: list[LedgerTransaction]


class CostBasisService:
    def __init__(
        self,
        *,
        store: LedgerStore,
        engine: CostBasisEngine,
        accounts: AccountRegistry,
        assets: AssetRegistry,
        epsilon: Decimal,
    ) -> None:
        self._store = store
        self._engine = engine
        self._accounts = accounts
        self._assets = assets
        self._epsilon = epsilon

    def recalc_cost_basis(
        self,
        mode: RecalcMode | str = RecalcMode.PURE,
        as_of: str | datetime | None = None,
        external_reference: str | None = None,
        notes: str | None = None,
    ) -> RecalcResult:
        try:
            resolved_mode = RecalcMode(mode)
        except ValueError as exc:
            raise ValidationError(f"Invalid mode: {mode!r}") from exc
        resolved_as_of = parse_as_of(as_of)
        as_of_iso = resolved_as_of.isoformat()
        reference = external_reference if external_reference is not None else f"{RECALC_REFERENCE_PREFIX}{as_of_iso}"
        row_notes = notes if notes is not None else f"Recalc ({resolved_mode}) as of {as_of_iso}"

        started = perf_counter()
        previous_ids = [
            tx.id for tx in self._store.query(tx_type=TxType.COST_BASIS_RESET) if tx.auto_generated and tx.id is not None
        ]
        transactions = [tx for tx in self._store.query(as_of=resolved_as_of) if not tx.auto_generated]
        replay = self._engine.replay(transactions, resolved_mode)

        if replay.diagnostics:
            logger.warning("Cost basis replay found %d transfer diagnostics", len(replay.diagnostics))

        known_accounts = {account.id for account in self._accounts.get_many({key[0] for key in replay.positions})}
        known_assets = {asset.id for asset in self._assets.get_many({key[1] for key in replay.positions})}

        rows: list[LedgerTransaction] = []
        skipped_unknown = 0
        skipped_zero_quantity = 0
        for (account_id, asset_id), position in sorted(replay.positions.items()):
            cost_basis = position.cost_basis
            if cost_basis is None or account_id not in known_accounts or asset_id not in known_assets:
                skipped_unknown += 1
                continue
            if abs(position.quantity) <= self._epsilon:
                skipped_zero_quantity += 1
                continue
            rows.append(
                LedgerTransaction(
                    date_time=resolved_as_of,
                    account_id=account_id,
                    asset_id=asset_id,
                    tx_type=TxType.COST_BASIS_RESET,
                    quantity=Decimal(0),
                    checkpoint_quantity=position.quantity,
                    unit_price_in_base=position.unit_cost,
                    total_value_in_base=max(cost_basis, Decimal(0)),
                    external_reference=reference,
                    notes=row_notes,
                    auto_generated=True,
                )
            )

        deleted, created = self._store.replace(previous_ids, rows)

        if skipped_unknown or skipped_zero_quantity:
            logger.warning(
                "Recalc skipped positions: unknown=%d zero_quantity=%d as_of=%s mode=%s",
                skipped_unknown,
                skipped_zero_quantity,
                as_of_iso,
                resolved_mode,
            )
        logger.info(
            "Recalc (%s) as of %s created %d resets, replaced %d in %.2fs",
            resolved_mode,
            as_of_iso,
            len(created),
            deleted,
            perf_counter() - started,
        )
        return RecalcResult(
            as_of=resolved_as_of,
            mode=resolved_mode,
            external_reference=reference,
            created=len(created),
            skipped_unknown=skipped_unknown,
            skipped_zero_quantity=skipped_zero_quantity,
            diagnostics=replay.diagnostics,
        )

    def create_cost_basis_reset(
        self,
        asset_id: AssetId,
        date_time: str | datetime | None = None,
        *,
        unit_price: Decimal | None = None,
        total_value: Decimal | None = None,
        external_reference: str | None = None,
        notes: str | None = None,
    ) -> ResetResult:
        """Checkpoint the basis of every account holding ``asset_id`` at ``date_time``.

        A unit price applies to each account; a total value is split by quantity,
        rounded to 1e-6, with the last account taking the remainder.
        """
        if (unit_price is None) == (total_value is None):
            raise ValidationError("Provide exactly one of unit_price or total_value")
        value = unit_price if unit_price is not None else total_value
        if value is None or not value.is_finite() or value < 0:
            raise ValidationError("Reset valuation must be a non-negative number")

        resolved_at = parse_as_of(date_time, field_name="date_time")
        if self._assets.get(asset_id) is None:
            raise NotFoundError("Asset", [asset_id])

        tracker = BalanceTracker()
        tracker.apply_transactions(self._store.query(asset_id=asset_id, as_of=resolved_at))
        holdings = sorted((account_id, qty) for account_id, qty in tracker.accounts_holding(asset_id).items() if qty > 0)
        if not holdings:
            raise ValidationError(f"No account holds {asset_id} at {resolved_at.isoformat()}")

        if unit_price is not None:
            totals = [unit_price * quantity for _, quantity in holdings]
        else:
            totals = self._allocate(holdings, value)

        rows = [
            LedgerTransaction(
                date_time=resolved_at,
                account_id=account_id,
                asset_id=asset_id,
                tx_type=TxType.COST_BASIS_RESET,
                quantity=Decimal(0),
                checkpoint_quantity=quantity,
                unit_price_in_base=unit_price,
                total_value_in_base=total,
                external_reference=external_reference,
                notes=notes,
            )
            for (account_id, quantity), total in zip(holdings, totals)
        ]
        created = self._store.append_many(rows)
        logger.info("Created %d cost basis resets for %s at %s", len(created), asset_id, resolved_at.isoformat())
        return ResetResult(asset_id=asset_id, date_time=resolved_at, created=len(created), rows=created)

    @staticmethod
    def _allocate(holdings: list[tuple[AccountId, Decimal]], total_value: Decimal) -> list[Decimal]:
        total_quantity = sum((quantity for _, quantity in holdings), Decimal(0))
        allocations: list[Decimal] = []
        allocated = Decimal(0)
        for idx, (_, quantity) in enumerate(holdings):
            if idx == len(holdings) - 1:
                share = total_value - allocated
            else:
                share = (total_value * quantity / total_quantity).quantize(ALLOCATION_QUANTUM, rounding=ROUND_HALF_UP)
            allocations.append(share)
            allocated += share
        return allocations
