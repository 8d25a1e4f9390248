from __future__ import annotations

import logging
from datetime import timedelta
from time import perf_counter
from typing import Iterable
from uuid import uuid4

from pydantic import BaseModel

from config import AppSettings
from domain.base_types import AccountId, AssetId, TransactionId, TransferAction, TransferGroupId, TxType
from domain.errors import NotFoundError, ValidationError
from domain.store import AccountRegistry, AssetRegistry, LedgerStore
from domain.transfers import TransferIssue, TransferMatcher, TransferTolerance

logger = logging.getLogger(__name__)


def transfer_tolerance(settings: AppSettings) -> TransferTolerance:
    return TransferTolerance(
        match_window=timedelta(seconds=settings.transfer_match_window_seconds),
        quantity_epsilon=settings.transfer_quantity_epsilon,
        fee_tolerance=settings.transfer_fee_tolerance,
        fee_tolerance_ratio=settings.transfer_fee_tolerance_ratio,
    )


class TransferIssueList(BaseModel):
    diagnostics: list[TransferIssue]
    total: int


class TransferResolution(BaseModel):
    action: TransferAction
    updated: int
    transfer_group_id: TransferGroupId | None = None


class TransferService:
    def __init__(
        self,
        *,
        store: LedgerStore,
        matcher: TransferMatcher,
        accounts: AccountRegistry,
        assets: AssetRegistry,
    ) -> None:
        self._store = store
        self._matcher = matcher
        self._accounts = accounts
        self._assets = assets

    def list_transfer_issues(
        self,
        asset_ids: Iterable[AssetId] | None = None,
        account_ids: Iterable[AccountId] | None = None,
    ) -> TransferIssueList:
        started = perf_counter()
        transfers = self._store.query(tx_type=TxType.TRANSFER)
        wanted_assets = set(asset_ids) if asset_ids else None
        if wanted_assets is not None:
            transfers = [tx for tx in transfers if tx.asset_id in wanted_assets]

        issues = self._matcher.diagnose(transfers)
        if account_ids:
            wanted_accounts = set(account_ids)
            issues = [issue for issue in issues if any(leg.account_id in wanted_accounts for leg in issue.legs)]

        self._enrich(issues)
        logger.info("Listed %d transfer issues in %.2fs", len(issues), perf_counter() - started)
        return TransferIssueList(diagnostics=issues, total=len(issues))

    def resolve_transfer(self, leg_ids: Iterable[TransactionId], action: TransferAction | str) -> TransferResolution:
        try:
            resolved_action = TransferAction(action)
        except ValueError as exc:
            raise ValidationError(f"Invalid action: {action!r}") from exc

        ids = sorted(set(leg_ids))
        if not ids:
            raise ValidationError("leg_ids must not be empty")
        if resolved_action == TransferAction.MATCH and len(ids) < 2:
            raise ValidationError("MATCH needs at least two transfer legs")

        legs = self._store.get_many(ids)
        missing = set(ids) - {leg.id for leg in legs}
        if missing:
            raise NotFoundError("Transaction", missing)

        not_transfers = sorted(leg.id for leg in legs if leg.tx_type != TxType.TRANSFER and leg.id is not None)
        if not_transfers:
            raise ValidationError(f"Only TRANSFER rows can be resolved: {', '.join(map(str, not_transfers))}")

        if resolved_action == TransferAction.MATCH:
            asset_ids = {leg.asset_id for leg in legs}
            if len(asset_ids) > 1:
                raise ValidationError(f"Cannot match legs across assets: {', '.join(sorted(asset_ids))}")
            group_id = TransferGroupId(uuid4().hex)
            updated = self._store.update(ids, transfer_group_id=group_id, separated=False)
            logger.info("Matched %d transfer legs into group %s", updated, group_id)
            return TransferResolution(action=resolved_action, updated=updated, transfer_group_id=group_id)

        updated = self._store.update(ids, transfer_group_id=None, separated=True)
        logger.info("Separated %d transfer legs", updated)
        return TransferResolution(action=resolved_action, updated=updated)

    def _enrich(self, issues: list[TransferIssue]) -> None:
        legs = [leg for issue in issues for leg in issue.legs]
        accounts = {account.id: account for account in self._accounts.get_many({leg.account_id for leg in legs})}
        assets = {asset.id: asset for asset in self._assets.get_many({leg.asset_id for leg in legs})}
        for leg in legs:
            account = accounts.get(leg.account_id)
            if account is not None:
                leg.account_name = account.name
            asset = assets.get(leg.asset_id)
            if asset is not None:
                leg.asset_symbol = asset.symbol
                leg.asset_name = asset.name
