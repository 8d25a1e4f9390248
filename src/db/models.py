from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class AccountOrm(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    platform: Mapped[str] = mapped_column(String, nullable=False, default="")


class AssetOrm(Base):
    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    asset_type: Mapped[str] = mapped_column(String, nullable=False, default="CRYPTO")
    volatility_bucket: Mapped[str] = mapped_column(String, nullable=False, default="VOLATILE")
    pricing_mode: Mapped[str] = mapped_column(String, nullable=False, default="AUTO")
    manual_price: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)


class LedgerTransactionOrm(Base):
    """Ledger rows reference accounts and assets by id only; imports may land before the registries."""

    __tablename__ = "ledger_transactions"
    __table_args__ = (Index("ix_ledger_transactions_position", "account_id", "asset_id", "date_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    tx_type: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    notes: Mapped[str | None] = mapped_column(String, nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    transfer_group_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    separated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    unit_price_in_base: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    total_value_in_base: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    checkpoint_quantity: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    auto_generated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class PriceLatestOrm(Base):
    __tablename__ = "price_latest"

    asset_id: Mapped[str] = mapped_column(String, ForeignKey("assets.id"), primary_key=True)
    price_in_base: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False, default="")
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
