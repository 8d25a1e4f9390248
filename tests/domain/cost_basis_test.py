from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.base_types import RecalcMode, TransferGroupId, TxType
from domain.cost_basis import CostBasisEngine, CostBasisPosition, Lot
from domain.transfers import TransferTolerance
from tests.constants import BTC, COLD, ETH, EXCHANGE
from tests.helpers.time_utils import DEFAULT_TIME_GEN, make_tx


@pytest.fixture(scope="function")
def engine(tolerance: TransferTolerance) -> CostBasisEngine:
    return CostBasisEngine(tolerance=tolerance)


def buy(account_id, asset_id, quantity, total, **fields):
    return make_tx(
        account_id=account_id,
        asset_id=asset_id,
        quantity=Decimal(quantity),
        total_value_in_base=Decimal(total),
        **fields,
    )


def sell(account_id, asset_id, quantity, total, **fields):
    return make_tx(
        account_id=account_id,
        asset_id=asset_id,
        quantity=-Decimal(quantity),
        total_value_in_base=Decimal(total),
        **fields,
    )


def test_fifo_disposals(engine: CostBasisEngine) -> None:
    txs = [
        buy(EXCHANGE, ETH, "1", "2000"),
        buy(EXCHANGE, ETH, "0.5", "1100"),
        sell(EXCHANGE, ETH, "0.6", "1500"),
        # Spans both lots: 0.4 from the first, 0.3 from the second.
        sell(EXCHANGE, ETH, "0.7", "1900"),
    ]

    result = engine.replay(txs)

    first, second = result.disposals
    assert first.cost_basis == Decimal("1200")
    assert first.gain == Decimal("300")
    assert second.cost_basis == Decimal("800") + Decimal("660")
    assert second.gain == Decimal("1900") - Decimal("1460")

    position = result.positions[(EXCHANGE, ETH)]
    assert position.quantity == Decimal("0.2")
    assert position.cost_basis == Decimal("440")
    assert position.unit_cost == Decimal("2200")
    assert position.realized_gain == Decimal("300") + Decimal("440")


def test_unit_price_values_inflow(engine: CostBasisEngine) -> None:
    txs = [make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("2"), unit_price_in_base=Decimal("30000"))]

    position = engine.replay(txs).positions[(EXCHANGE, BTC)]

    assert position.cost_basis == Decimal("60000")


def test_unvalued_inflow_is_unknown(engine: CostBasisEngine) -> None:
    txs = [make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1"))]

    position = engine.replay(txs).positions[(EXCHANGE, BTC)]

    assert not position.basis_known
    assert position.cost_basis is None
    assert position.quantity == Decimal("1")


def test_transfer_carries_basis_without_gain(engine: CostBasisEngine) -> None:
    purchase = buy(EXCHANGE, BTC, "1", "30000")
    moved_at = DEFAULT_TIME_GEN()
    txs = [
        purchase,
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("-1"), tx_type=TxType.TRANSFER, date_time=moved_at),
        make_tx(account_id=COLD, asset_id=BTC, quantity=Decimal("1"), tx_type=TxType.TRANSFER, date_time=moved_at),
    ]

    result = engine.replay(txs)

    assert result.disposals == []
    assert result.diagnostics == []
    cold = result.positions[(COLD, BTC)]
    assert cold.quantity == Decimal("1")
    assert cold.cost_basis == Decimal("30000")
    assert cold.unit_cost == Decimal("30000")
    # Carried slices keep the acquisition date.
    assert cold.lots[0].opened_at == purchase.date_time
    assert cold.lots[0].source_tx_id == purchase.id
    exchange = result.positions[(EXCHANGE, BTC)]
    assert exchange.quantity == 0
    assert exchange.cost_basis == 0


def test_fee_mismatch_drops_fee_slice(engine: CostBasisEngine) -> None:
    moved_at = DEFAULT_TIME_GEN.next() + timedelta(hours=1)
    txs = [
        buy(EXCHANGE, ETH, "100", "200000"),
        make_tx(account_id=EXCHANGE, asset_id=ETH, quantity=Decimal("-100"), tx_type=TxType.TRANSFER, date_time=moved_at),
        make_tx(account_id=COLD, asset_id=ETH, quantity=Decimal("99.5"), tx_type=TxType.TRANSFER, date_time=moved_at),
    ]

    result = engine.replay(txs)

    assert [issue.issue for issue in result.diagnostics] == ["FEE_MISMATCH"]
    assert result.disposals == []
    cold = result.positions[(COLD, ETH)]
    assert cold.quantity == Decimal("99.5")
    assert cold.unit_cost == Decimal("2000")


def test_matched_transfer_across_days_carries_basis(engine: CostBasisEngine) -> None:
    group_id = TransferGroupId("manual")
    sent_at = DEFAULT_TIME_GEN.next() + timedelta(hours=1)
    txs = [
        buy(EXCHANGE, BTC, "2", "50000"),
        make_tx(
            account_id=EXCHANGE,
            asset_id=BTC,
            quantity=Decimal("-1"),
            tx_type=TxType.TRANSFER,
            date_time=sent_at,
            transfer_group_id=group_id,
        ),
        make_tx(
            account_id=COLD,
            asset_id=BTC,
            quantity=Decimal("1"),
            tx_type=TxType.TRANSFER,
            date_time=sent_at + timedelta(days=1),
            transfer_group_id=group_id,
        ),
    ]

    result = engine.replay(txs)

    assert result.positions[(COLD, BTC)].cost_basis == Decimal("25000")
    assert result.positions[(EXCHANGE, BTC)].cost_basis == Decimal("25000")


def test_unmatched_transfer_is_valued_as_flow(engine: CostBasisEngine) -> None:
    txs = [
        buy(EXCHANGE, BTC, "1", "30000"),
        make_tx(
            account_id=EXCHANGE,
            asset_id=BTC,
            quantity=Decimal("-1"),
            tx_type=TxType.TRANSFER,
            total_value_in_base=Decimal("35000"),
        ),
    ]

    result = engine.replay(txs)

    assert [issue.issue for issue in result.diagnostics] == ["UNMATCHED"]
    assert len(result.disposals) == 1
    assert result.disposals[0].gain == Decimal("5000")


def test_shortfall_breaks_continuity(engine: CostBasisEngine) -> None:
    txs = [buy(EXCHANGE, BTC, "1", "30000"), sell(EXCHANGE, BTC, "2", "70000")]

    result = engine.replay(txs)

    assert result.disposals[0].cost_basis is None
    assert result.disposals[0].gain is None
    position = result.positions[(EXCHANGE, BTC)]
    assert position.quantity == Decimal("-1")
    assert position.continuity_broken
    assert position.cost_basis is None


def test_reconciliation_is_basis_neutral(engine: CostBasisEngine) -> None:
    txs = [
        buy(EXCHANGE, BTC, "1", "30000"),
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("0.5"), tx_type=TxType.RECONCILIATION),
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("-0.25"), tx_type=TxType.RECONCILIATION),
    ]

    result = engine.replay(txs)

    assert result.disposals == []
    position = result.positions[(EXCHANGE, BTC)]
    assert position.quantity == Decimal("1.25")
    assert position.cost_basis == Decimal("22500")


def reset_row(account_id, asset_id, checkpoint, unit_price=None, total=None, **fields):
    return make_tx(
        account_id=account_id,
        asset_id=asset_id,
        quantity=Decimal(0),
        tx_type=TxType.COST_BASIS_RESET,
        checkpoint_quantity=Decimal(checkpoint),
        unit_price_in_base=unit_price,
        total_value_in_base=total,
        **fields,
    )


def test_pure_mode_ignores_resets(engine: CostBasisEngine) -> None:
    txs = [buy(EXCHANGE, BTC, "1", "30000"), reset_row(EXCHANGE, BTC, "1", unit_price=Decimal("10"))]

    position = engine.replay(txs, RecalcMode.PURE).positions[(EXCHANGE, BTC)]

    assert position.cost_basis == Decimal("30000")


def test_honor_resets_replaces_lot_state(engine: CostBasisEngine) -> None:
    txs = [
        make_tx(account_id=EXCHANGE, asset_id=BTC, quantity=Decimal("1")),
        reset_row(EXCHANGE, BTC, "1", total=Decimal("25000")),
        sell(EXCHANGE, BTC, "0.5", "20000"),
    ]

    result = engine.replay(txs, RecalcMode.HONOR_RESETS)

    position = result.positions[(EXCHANGE, BTC)]
    assert position.basis_known
    assert position.cost_basis == Decimal("12500")
    assert result.disposals[0].gain == Decimal("7500")


def test_reset_with_zero_checkpoint_clears_position(engine: CostBasisEngine) -> None:
    txs = [buy(EXCHANGE, BTC, "1", "30000"), reset_row(EXCHANGE, BTC, "0")]

    position = engine.replay(txs, RecalcMode.HONOR_RESETS).positions[(EXCHANGE, BTC)]

    assert position.quantity == 0
    assert not position.lots


def test_replay_is_order_independent(engine: CostBasisEngine) -> None:
    txs = [buy(EXCHANGE, ETH, "1", "2000"), buy(EXCHANGE, ETH, "1", "3000"), sell(EXCHANGE, ETH, "1.5", "4000")]

    forward = engine.replay(txs)
    backward = engine.replay(list(reversed(txs)))

    assert forward.disposals == backward.disposals
    assert forward.positions[(EXCHANGE, ETH)].cost_basis == backward.positions[(EXCHANGE, ETH)].cost_basis


def test_open_lot_keeps_acquisition_order() -> None:
    position = CostBasisPosition(account_id=COLD, asset_id=BTC)
    early = datetime(2024, 1, 1, tzinfo=timezone.utc)
    late = datetime(2024, 2, 1, tzinfo=timezone.utc)

    position.open_lot(Lot(quantity_remaining=Decimal("1"), unit_cost=Decimal("2"), opened_at=late))
    position.open_lot(Lot(quantity_remaining=Decimal("1"), unit_cost=Decimal("1"), opened_at=early))
    slices, shortfall = position.consume(Decimal("1"))

    assert shortfall == 0
    assert slices[0].unit_cost == Decimal("1")
    assert position.quantity == Decimal("1")
