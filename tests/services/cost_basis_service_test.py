from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from db.repositories import LedgerTransactionRepository, PriceLatestRepository
from domain.base_types import RecalcMode, TransferIssueKind, TxType
from domain.errors import NotFoundError, ValidationError
from domain.pricing import LatestPrice
from services.cost_basis_service import RECALC_REFERENCE_PREFIX, CostBasisService
from tests.constants import BTC, COLD, ETH, EXCHANGE, UNKNOWN_ACCOUNT
from tests.helpers.time_utils import make_tx, unsaved

T0 = datetime(2024, 1, 10, tzinfo=timezone.utc)
AS_OF = datetime(2024, 6, 30, tzinfo=timezone.utc)


def seed(store: LedgerTransactionRepository, *txs) -> list:
    return store.append_many(unsaved(tx) for tx in txs)


def resets(store: LedgerTransactionRepository) -> list:
    return store.query(tx_type=TxType.COST_BASIS_RESET)


@pytest.mark.usefixtures("registries")
def test_recalc_writes_one_reset_per_known_position(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository
) -> None:
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("2"), total_value_in_base=Decimal("60000"), date_time=T0),
        make_tx(account_id=EXCHANGE, asset_id=ETH, quantity=Decimal("10"), total_value_in_base=Decimal("20000"), date_time=T0),
    )

    result = cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)

    assert result.created == 2
    assert result.skipped_unknown == 0
    assert result.skipped_zero_quantity == 0
    assert result.external_reference == f"{RECALC_REFERENCE_PREFIX}{AS_OF.isoformat()}"
    rows = {row.asset_id: row for row in resets(store)}
    assert rows[BTC].checkpoint_quantity == Decimal("2")
    assert rows[BTC].total_value_in_base == Decimal("60000")
    assert rows[BTC].unit_price_in_base == Decimal("30000")
    assert rows[BTC].quantity == 0
    assert rows[BTC].auto_generated
    assert rows[BTC].date_time == AS_OF


@pytest.mark.usefixtures("registries")
def test_pure_recalc_is_idempotent(cost_basis_service: CostBasisService, store: LedgerTransactionRepository) -> None:
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), total_value_in_base=Decimal("30000"), date_time=T0),
        make_tx(account_id=COLD, asset_id=ETH, quantity=Decimal("4"), unit_price_in_base=Decimal("1500"), date_time=T0),
    )

    cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)
    first = [(row.account_id, row.asset_id, row.checkpoint_quantity, row.total_value_in_base) for row in resets(store)]
    cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)
    second = [(row.account_id, row.asset_id, row.checkpoint_quantity, row.total_value_in_base) for row in resets(store)]

    assert len(first) == 2
    assert sorted(first) == sorted(second)


@pytest.mark.usefixtures("registries")
def test_recalc_replaces_earlier_generated_resets(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository
) -> None:
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), total_value_in_base=Decimal("30000"), date_time=T0),
    )
    cost_basis_service.recalc_cost_basis(RecalcMode.PURE, T0 + timedelta(days=1))

    cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)

    rows = resets(store)
    assert len(rows) == 1
    assert rows[0].date_time == AS_OF


@pytest.mark.usefixtures("registries")
def test_transfer_moves_basis_between_accounts(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository
) -> None:
    moved_at = T0 + timedelta(days=3)
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), total_value_in_base=Decimal("30000"), date_time=T0),
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("-1"), tx_type=TxType.TRANSFER, date_time=moved_at),
        make_tx(account_id=COLD, asset_id=BTC, quantity=Decimal("1"), tx_type=TxType.TRANSFER, date_time=moved_at),
    )

    result = cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)

    assert result.diagnostics == []
    assert result.skipped_zero_quantity == 1
    (row,) = resets(store)
    assert row.account_id == COLD
    assert row.unit_price_in_base == Decimal("30000")
    assert row.total_value_in_base == Decimal("30000")


@pytest.mark.usefixtures("registries")
def test_unknown_positions_are_skipped(cost_basis_service: CostBasisService, store: LedgerTransactionRepository) -> None:
    seed(
        store,
        # No valuation on the row: basis unknown.
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), date_time=T0),
        make_tx(
            account_id=UNKNOWN_ACCOUNT, asset_id=ETH, quantity=Decimal("1"), total_value_in_base=Decimal("1"), date_time=T0
        ),
    )

    result = cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)

    assert result.created == 0
    assert result.skipped_unknown == 2
    assert resets(store) == []


@pytest.mark.usefixtures("registries")
def test_unknown_basis_ignores_price_cache(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository, price_repo: PriceLatestRepository
) -> None:
    seed(store, make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), date_time=datetime(2020, 1, 1, tzinfo=timezone.utc)))
    price_repo.upsert(BTC, LatestPrice(price_in_base=Decimal("40000"), last_updated=AS_OF, source="coingecko"))
    before = cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)

    price_repo.upsert(BTC, LatestPrice(price_in_base=Decimal("90000"), last_updated=AS_OF, source="coingecko"))
    after = cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)

    assert before.skipped_unknown == after.skipped_unknown == 1
    assert before.created == after.created == 0
    assert resets(store) == []


@pytest.mark.usefixtures("registries")
def test_partial_recalc_reports_created_skipped_and_diagnostics(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository
) -> None:
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), total_value_in_base=Decimal("30000"), date_time=T0),
        make_tx(
            account_id=EXCHANGE,
            asset_id=BTC,
            quantity=Decimal("-0.25"),
            tx_type=TxType.TRANSFER,
            date_time=T0 + timedelta(days=2),
        ),
        make_tx(account_id=COLD, asset_id=BTC, quantity=Decimal("1"), date_time=T0),
        make_tx(account_id=EXCHANGE, asset_id=ETH, quantity=Decimal("2"), total_value_in_base=Decimal("4000"), date_time=T0),
        make_tx(
            account_id=EXCHANGE,
            asset_id=ETH,
            quantity=Decimal("-2"),
            total_value_in_base=Decimal("5000"),
            date_time=T0 + timedelta(days=1),
        ),
    )

    result = cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)

    assert result.created == 1
    assert result.skipped_unknown == 1
    assert result.skipped_zero_quantity == 1
    assert [issue.issue for issue in result.diagnostics] == [TransferIssueKind.UNMATCHED]
    (row,) = resets(store)
    assert (row.account_id, row.asset_id) == (EXCHANGE, BTC)
    assert row.checkpoint_quantity == Decimal("0.75")
    assert row.total_value_in_base == Decimal("22500")


@pytest.mark.usefixtures("registries")
def test_recalc_reference_and_notes_are_attached_verbatim(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository
) -> None:
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), total_value_in_base=Decimal("30000"), date_time=T0),
        make_tx(account_id=COLD, asset_id=ETH, quantity=Decimal("3"), total_value_in_base=Decimal("6000"), date_time=T0),
    )

    result = cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF, external_reference="year-end 2024", notes="auditor copy")

    assert result.external_reference == "year-end 2024"
    rows = resets(store)
    assert len(rows) == 2
    assert {(row.external_reference, row.notes) for row in rows} == {("year-end 2024", "auditor copy")}


@pytest.mark.usefixtures("registries")
def test_malformed_as_of_rejected_before_writing(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository
) -> None:
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), total_value_in_base=Decimal("30000"), date_time=T0),
    )
    cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)
    existing = resets(store)

    with pytest.raises(ValidationError, match="as_of"):
        cost_basis_service.recalc_cost_basis(RecalcMode.PURE, "end of june")

    assert resets(store) == existing


@pytest.mark.usefixtures("registries")
def test_rows_after_as_of_are_ignored(cost_basis_service: CostBasisService, store: LedgerTransactionRepository) -> None:
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), total_value_in_base=Decimal("30000"), date_time=T0),
        make_tx(
            account_id=EXCHANGE,
            asset_id=BTC,
            quantity=Decimal("1"),
            total_value_in_base=Decimal("50000"),
            date_time=AS_OF + timedelta(days=1),
        ),
    )

    cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)

    (row,) = resets(store)
    assert row.checkpoint_quantity == Decimal("1")
    assert row.total_value_in_base == Decimal("30000")


@pytest.mark.usefixtures("registries")
def test_honor_resets_uses_manual_checkpoint(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository
) -> None:
    seed(store, make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("2"), date_time=T0))
    cost_basis_service.create_cost_basis_reset(BTC, T0 + timedelta(days=1), unit_price=Decimal("20000"))

    pure = cost_basis_service.recalc_cost_basis(RecalcMode.PURE, AS_OF)
    honored = cost_basis_service.recalc_cost_basis(RecalcMode.HONOR_RESETS, AS_OF)

    assert pure.skipped_unknown == 1
    assert honored.created == 1
    generated = [row for row in resets(store) if row.auto_generated]
    assert len(generated) == 1
    assert generated[0].total_value_in_base == Decimal("40000")


def test_invalid_mode_rejected(cost_basis_service: CostBasisService) -> None:
    with pytest.raises(ValidationError):
        cost_basis_service.recalc_cost_basis("FIFO", AS_OF)


@pytest.mark.usefixtures("registries")
def test_reset_with_unit_price_per_account(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository
) -> None:
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1.5"), date_time=T0),
        make_tx(account_id=COLD, asset_id=BTC, quantity=Decimal("0.5"), date_time=T0),
    )

    result = cost_basis_service.create_cost_basis_reset(BTC, AS_OF, unit_price=Decimal("30000"))

    assert result.created == 2
    totals = {row.account_id: row.total_value_in_base for row in result.rows}
    assert totals == {EXCHANGE: Decimal("45000"), COLD: Decimal("15000")}
    assert all(not row.auto_generated for row in result.rows)


@pytest.mark.usefixtures("registries")
def test_reset_total_value_split_by_quantity(
    cost_basis_service: CostBasisService, store: LedgerTransactionRepository
) -> None:
    seed(
        store,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), date_time=T0),
        make_tx(account_id=COLD, asset_id=BTC, quantity=Decimal("2"), date_time=T0),
    )

    result = cost_basis_service.create_cost_basis_reset(BTC, AS_OF, total_value=Decimal("100"))

    totals = {row.account_id: row.total_value_in_base for row in result.rows}
    # Accounts are allocated in id order; the last one takes the rounding remainder.
    assert totals[COLD] == Decimal("66.666667")
    assert totals[EXCHANGE] == Decimal("33.333333")
    assert sum(totals.values()) == Decimal("100")


@pytest.mark.usefixtures("registries")
def test_reset_validation(cost_basis_service: CostBasisService, store: LedgerTransactionRepository) -> None:
    seed(store, make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"), date_time=T0))

    with pytest.raises(ValidationError):
        cost_basis_service.create_cost_basis_reset(BTC, AS_OF)
    with pytest.raises(ValidationError):
        cost_basis_service.create_cost_basis_reset(BTC, AS_OF, unit_price=Decimal("1"), total_value=Decimal("1"))
    with pytest.raises(ValidationError):
        cost_basis_service.create_cost_basis_reset(BTC, AS_OF, unit_price=Decimal("-1"))
    with pytest.raises(ValidationError):
        cost_basis_service.create_cost_basis_reset(ETH, AS_OF, unit_price=Decimal("1"))
    with pytest.raises(NotFoundError):
        cost_basis_service.create_cost_basis_reset("DOGE", AS_OF, unit_price=Decimal("1"))
    assert resets(store) == []
