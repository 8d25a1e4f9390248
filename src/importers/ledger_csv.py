from __future__ import annotations

import csv
from decimal import Decimal, InvalidOperation
from pathlib import Path

import pydantic

from domain.base_types import AccountId, AssetId, PricingMode, TxType
from domain.errors import ValidationError
from domain.ledger import Account, Asset, LedgerTransaction
from utils.time_utils import parse_as_of

LEDGER_REQUIRED_COLUMNS = {"date_time", "account_id", "asset_id", "tx_type", "quantity"}
ACCOUNT_REQUIRED_COLUMNS = {"id", "name"}
ASSET_REQUIRED_COLUMNS = {"id", "symbol", "name"}


def load_ledger_csv(csv_path: Path) -> list[LedgerTransaction]:
    """Load ledger rows.

    Each row should contain: date_time,account_id,asset_id,tx_type,quantity
    [,notes,external_reference,unit_price_in_base,total_value_in_base]
    Naive timestamps are read as UTC. COST_BASIS_RESET rows cannot be imported.
    """
    transactions: list[LedgerTransaction] = []
    for line_no, row in _read_rows(csv_path, LEDGER_REQUIRED_COLUMNS):
        tx_type_raw = row["tx_type"].strip().upper()
        try:
            tx_type = TxType(tx_type_raw)
        except ValueError as exc:
            raise ValidationError(f"{csv_path}:{line_no}: invalid tx_type {tx_type_raw!r}") from exc
        if tx_type == TxType.COST_BASIS_RESET:
            raise ValidationError(f"{csv_path}:{line_no}: COST_BASIS_RESET rows cannot be imported")

        if not row["date_time"].strip():
            raise ValidationError(f"{csv_path}:{line_no}: date_time is required")
        quantity = _parse_decimal(row["quantity"], csv_path, line_no, "quantity")
        if quantity is None or quantity == 0:
            raise ValidationError(f"{csv_path}:{line_no}: quantity must be a non-zero number")

        try:
            tx = LedgerTransaction(
                date_time=parse_as_of(row["date_time"], field_name=f"date_time on line {line_no}"),
                account_id=AccountId(row["account_id"].strip()),
                asset_id=AssetId(row["asset_id"].strip()),
                tx_type=tx_type,
                quantity=quantity,
                notes=_optional(row.get("notes")),
                external_reference=_optional(row.get("external_reference")),
                unit_price_in_base=_parse_decimal(row.get("unit_price_in_base"), csv_path, line_no, "unit_price_in_base"),
                total_value_in_base=_parse_decimal(
                    row.get("total_value_in_base"), csv_path, line_no, "total_value_in_base"
                ),
            )
        except pydantic.ValidationError as exc:
            raise ValidationError(f"{csv_path}:{line_no}: {_describe(exc)}") from exc
        transactions.append(tx)
    return transactions


def load_accounts_csv(csv_path: Path) -> list[Account]:
    """Each row should contain: id,name[,platform]"""
    return [
        Account(id=AccountId(row["id"].strip()), name=row["name"].strip(), platform=(row.get("platform") or "").strip())
        for _, row in _read_rows(csv_path, ACCOUNT_REQUIRED_COLUMNS)
    ]


def load_assets_csv(csv_path: Path) -> list[Asset]:
    """Each row should contain: id,symbol,name[,asset_type,volatility_bucket,pricing_mode,manual_price]"""
    assets: list[Asset] = []
    for line_no, row in _read_rows(csv_path, ASSET_REQUIRED_COLUMNS):
        pricing_mode_raw = (row.get("pricing_mode") or PricingMode.AUTO).strip().upper()
        try:
            pricing_mode = PricingMode(pricing_mode_raw)
        except ValueError as exc:
            raise ValidationError(f"{csv_path}:{line_no}: invalid pricing_mode {pricing_mode_raw!r}") from exc
        try:
            asset = Asset(
                id=AssetId(row["id"].strip()),
                symbol=row["symbol"].strip().upper(),
                name=row["name"].strip(),
                asset_type=(row.get("asset_type") or "CRYPTO").strip().upper(),
                volatility_bucket=(row.get("volatility_bucket") or "VOLATILE").strip().upper(),
                pricing_mode=pricing_mode,
                manual_price=_parse_decimal(row.get("manual_price"), csv_path, line_no, "manual_price"),
            )
        except pydantic.ValidationError as exc:
            raise ValidationError(f"{csv_path}:{line_no}: {_describe(exc)}") from exc
        assets.append(asset)
    return assets


def _read_rows(csv_path: Path, required: set[str]) -> list[tuple[int, dict[str, str]]]:
    if not csv_path.exists():
        return []

    with csv_path.open(encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            raise ValidationError(f"CSV {csv_path} is empty or missing headers")

        missing = required - {name.strip() for name in reader.fieldnames}
        if missing:
            raise ValidationError(f"CSV {csv_path} missing required columns: {', '.join(sorted(missing))}")

        # Header is line 1.
        return [
            (line_no, {key.strip(): (value or "") for key, value in row.items() if key is not None})
            for line_no, row in enumerate(reader, start=2)
        ]


def _optional(raw: str | None) -> str | None:
    if raw is None:
        return None
    normalized = raw.strip()
    return normalized or None


def _parse_decimal(raw: str | None, csv_path: Path, line_no: int, column: str) -> Decimal | None:
    normalized = _optional(raw)
    if normalized is None:
        return None
    try:
        value = Decimal(normalized.replace(",", ""))
    except InvalidOperation as exc:
        raise ValidationError(f"{csv_path}:{line_no}: {column} must be a valid number") from exc
    if not value.is_finite():
        raise ValidationError(f"{csv_path}:{line_no}: {column} must be a valid number")
    return value


def _describe(exc: pydantic.ValidationError) -> str:
    return "; ".join(error["msg"] for error in exc.errors())
