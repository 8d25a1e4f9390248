from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import models
from domain.base_types import AccountId, AssetId, PricingMode, TransactionId, TransferGroupId, TxType
from domain.ledger import Account, Asset, LedgerTransaction
from domain.pricing import LatestPrice


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LedgerTransactionRepository:
    """SQLAlchemy-backed ledger store. Every public write commits once."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def append(self, tx: LedgerTransaction) -> LedgerTransaction:
        return self.append_many([tx])[0]

    def append_many(self, txs: Iterable[LedgerTransaction]) -> list[LedgerTransaction]:
        orm_txs = [self._to_orm(tx) for tx in txs]
        self._session.add_all(orm_txs)
        self._session.commit()
        return [self._to_domain(orm_tx) for orm_tx in orm_txs]

    def get_many(self, ids: Iterable[TransactionId]) -> list[LedgerTransaction]:
        wanted = set(ids)
        if not wanted:
            return []
        stmt = (
            select(models.LedgerTransactionOrm)
            .where(models.LedgerTransactionOrm.id.in_(wanted))
            .order_by(models.LedgerTransactionOrm.date_time.asc(), models.LedgerTransactionOrm.id.asc())
        )
        return [self._to_domain(orm_tx) for orm_tx in self._session.scalars(stmt)]

    def query(
        self,
        *,
        account_id: AccountId | None = None,
        asset_id: AssetId | None = None,
        tx_type: TxType | None = None,
        as_of: datetime | None = None,
    ) -> list[LedgerTransaction]:
        stmt = select(models.LedgerTransactionOrm)
        if account_id is not None:
            stmt = stmt.where(models.LedgerTransactionOrm.account_id == account_id)
        if asset_id is not None:
            stmt = stmt.where(models.LedgerTransactionOrm.asset_id == asset_id)
        if tx_type is not None:
            stmt = stmt.where(models.LedgerTransactionOrm.tx_type == tx_type.value)
        if as_of is not None:
            stmt = stmt.where(models.LedgerTransactionOrm.date_time <= _as_utc(as_of))
        stmt = stmt.order_by(models.LedgerTransactionOrm.date_time.asc(), models.LedgerTransactionOrm.id.asc())
        return [self._to_domain(orm_tx) for orm_tx in self._session.scalars(stmt)]

    def update(self, ids: Iterable[TransactionId], **fields: Any) -> int:
        wanted = set(ids)
        if not wanted:
            return 0
        values = {key: value.value if isinstance(value, Enum) else value for key, value in fields.items()}
        stmt = update(models.LedgerTransactionOrm).where(models.LedgerTransactionOrm.id.in_(wanted)).values(**values)
        try:
            result = self._session.execute(stmt)
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            raise
        return result.rowcount

    def delete(self, ids: Iterable[TransactionId]) -> int:
        return self.replace(ids, [])[0]

    def replace(
        self, delete_ids: Iterable[TransactionId], txs: Iterable[LedgerTransaction]
    ) -> tuple[int, list[LedgerTransaction]]:
        """Delete ``delete_ids`` and append ``txs`` in one commit.

        Returns the number of deleted rows and the appended rows with their ids.
        """
        wanted = set(delete_ids)
        orm_txs = [self._to_orm(tx) for tx in txs]
        deleted = 0
        try:
            if wanted:
                result = self._session.execute(
                    delete(models.LedgerTransactionOrm).where(models.LedgerTransactionOrm.id.in_(wanted))
                )
                deleted = result.rowcount
            self._session.add_all(orm_txs)
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            raise
        return deleted, [self._to_domain(orm_tx) for orm_tx in orm_txs]

    @staticmethod
    def _to_orm(tx: LedgerTransaction) -> models.LedgerTransactionOrm:
        return models.LedgerTransactionOrm(
            id=tx.id,
            date_time=tx.date_time,
            account_id=tx.account_id,
            asset_id=tx.asset_id,
            tx_type=tx.tx_type.value,
            quantity=tx.quantity,
            notes=tx.notes,
            external_reference=tx.external_reference,
            transfer_group_id=tx.transfer_group_id,
            separated=tx.separated,
            unit_price_in_base=tx.unit_price_in_base,
            total_value_in_base=tx.total_value_in_base,
            checkpoint_quantity=tx.checkpoint_quantity,
            auto_generated=tx.auto_generated,
        )

    @staticmethod
    def _to_domain(orm_tx: models.LedgerTransactionOrm) -> LedgerTransaction:
        return LedgerTransaction(
            id=TransactionId(orm_tx.id),
            date_time=_as_utc(orm_tx.date_time),
            account_id=AccountId(orm_tx.account_id),
            asset_id=AssetId(orm_tx.asset_id),
            tx_type=TxType(orm_tx.tx_type),
            quantity=orm_tx.quantity,
            notes=orm_tx.notes,
            external_reference=orm_tx.external_reference,
            transfer_group_id=TransferGroupId(orm_tx.transfer_group_id) if orm_tx.transfer_group_id else None,
            separated=orm_tx.separated,
            unit_price_in_base=orm_tx.unit_price_in_base,
            total_value_in_base=orm_tx.total_value_in_base,
            checkpoint_quantity=orm_tx.checkpoint_quantity,
            auto_generated=orm_tx.auto_generated,
        )


class AccountRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, accounts: list[Account]) -> list[Account]:
        for account in accounts:
            self._session.merge(models.AccountOrm(id=account.id, name=account.name, platform=account.platform))
        self._session.commit()
        return accounts

    def get_many(self, ids: Iterable[AccountId]) -> list[Account]:
        wanted = set(ids)
        if not wanted:
            return []
        stmt = select(models.AccountOrm).where(models.AccountOrm.id.in_(wanted))
        return [self._to_domain(orm_account) for orm_account in self._session.scalars(stmt)]

    def list(self) -> list[Account]:
        stmt = select(models.AccountOrm).order_by(models.AccountOrm.id.asc())
        return [self._to_domain(orm_account) for orm_account in self._session.scalars(stmt)]

    @staticmethod
    def _to_domain(orm_account: models.AccountOrm) -> Account:
        return Account(id=AccountId(orm_account.id), name=orm_account.name, platform=orm_account.platform)


class AssetRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, assets: list[Asset]) -> list[Asset]:
        for asset in assets:
            self._session.merge(
                models.AssetOrm(
                    id=asset.id,
                    symbol=asset.symbol,
                    name=asset.name,
                    asset_type=asset.asset_type,
                    volatility_bucket=asset.volatility_bucket,
                    pricing_mode=asset.pricing_mode.value,
                    manual_price=asset.manual_price,
                )
            )
        self._session.commit()
        return assets

    def get(self, asset_id: AssetId) -> Asset | None:
        orm_asset = self._session.get(models.AssetOrm, asset_id)
        if orm_asset is None:
            return None
        return self._to_domain(orm_asset)

    def get_many(self, ids: Iterable[AssetId]) -> list[Asset]:
        wanted = set(ids)
        if not wanted:
            return []
        stmt = select(models.AssetOrm).where(models.AssetOrm.id.in_(wanted))
        return [self._to_domain(orm_asset) for orm_asset in self._session.scalars(stmt)]

    def list(self) -> list[Asset]:
        stmt = select(models.AssetOrm).order_by(models.AssetOrm.id.asc())
        return [self._to_domain(orm_asset) for orm_asset in self._session.scalars(stmt)]

    @staticmethod
    def _to_domain(orm_asset: models.AssetOrm) -> Asset:
        return Asset(
            id=AssetId(orm_asset.id),
            symbol=orm_asset.symbol,
            name=orm_asset.name,
            asset_type=orm_asset.asset_type,
            volatility_bucket=orm_asset.volatility_bucket,
            pricing_mode=PricingMode(orm_asset.pricing_mode),
            manual_price=orm_asset.manual_price,
        )


class PriceLatestRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def upsert(self, asset_id: AssetId, price: LatestPrice) -> None:
        self._session.merge(
            models.PriceLatestOrm(
                asset_id=asset_id,
                price_in_base=price.price_in_base,
                source=price.source,
                last_updated=_as_utc(price.last_updated),
            )
        )
        self._session.commit()

    def get(self, asset_id: AssetId) -> LatestPrice | None:
        orm_price = self._session.get(models.PriceLatestOrm, asset_id)
        if orm_price is None:
            return None
        return self._to_domain(orm_price)

    def list(self) -> dict[AssetId, LatestPrice]:
        orm_prices = self._session.scalars(select(models.PriceLatestOrm))
        return {AssetId(orm_price.asset_id): self._to_domain(orm_price) for orm_price in orm_prices}

    @staticmethod
    def _to_domain(orm_price: models.PriceLatestOrm) -> LatestPrice:
        return LatestPrice(
            price_in_base=orm_price.price_in_base,
            last_updated=_as_utc(orm_price.last_updated),
            source=orm_price.source,
        )
