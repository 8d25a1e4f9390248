from __future__ import annotations

import hashlib
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel

from domain.base_types import AccountId, AssetId, TransactionId, TransferGroupId, TransferIssueKind, TxType
from domain.ledger import LedgerTransaction, ledger_sort_key


@dataclass(frozen=True)
class TransferTolerance:
    """Matching window and quantity tolerances for transfer legs.

    ``fee_tolerance`` is absolute (asset units); ``fee_tolerance_ratio`` is relative
    to the sent quantity. The larger of the two bounds a FEE_MISMATCH residual.
    """

    match_window: timedelta = timedelta(0)
    quantity_epsilon: Decimal = Decimal("0.000001")
    fee_tolerance: Decimal = Decimal("0")
    fee_tolerance_ratio: Decimal = Decimal("0")

    def fee_allowance(self, sent_quantity: Decimal) -> Decimal:
        return max(self.fee_tolerance, self.fee_tolerance_ratio * abs(sent_quantity))


class TransferIssueLeg(BaseModel):
    id: TransactionId
    date_time: datetime
    quantity: Decimal
    account_id: AccountId
    account_name: str | None = None
    asset_id: AssetId
    asset_symbol: str | None = None
    asset_name: str | None = None


class TransferIssue(BaseModel):
    key: str
    asset_id: AssetId
    date_time: datetime
    issue: TransferIssueKind
    leg_ids: list[TransactionId]
    legs: list[TransferIssueLeg] = []


def issue_key(asset_id: str, date_time: datetime, leg_ids: Iterable[TransactionId]) -> str:
    digest_input = "|".join(
        [
            asset_id,
            date_time.replace(microsecond=0).isoformat(),
            ",".join(str(leg_id) for leg_id in sorted(leg_ids)),
        ]
    )
    return hashlib.sha256(digest_input.encode("utf-8")).hexdigest()[:16]


@dataclass
class TransferGroup:
    """Legs recognised (or proposed) as the sides of one move between accounts."""

    asset_id: AssetId
    legs: list[LedgerTransaction]
    transfer_group_id: TransferGroupId | None = None
    issue: TransferIssueKind | None = None
    leg_ids: list[TransactionId] = field(init=False)

    def __post_init__(self) -> None:
        self.leg_ids = [TransactionId(leg.id) for leg in self.legs if leg.id is not None]

    @property
    def carries_basis(self) -> bool:
        return self.issue is None or self.issue == TransferIssueKind.FEE_MISMATCH

    @property
    def anchor(self) -> datetime:
        return min(leg.date_time for leg in self.legs)

    @property
    def sources(self) -> list[LedgerTransaction]:
        return [leg for leg in self.legs if leg.quantity < 0]

    @property
    def destinations(self) -> list[LedgerTransaction]:
        return [leg for leg in self.legs if leg.quantity > 0]

    @property
    def key(self) -> str:
        return issue_key(self.asset_id, self.anchor, self.leg_ids)

    def to_issue(self) -> TransferIssue:
        if self.issue is None:
            msg = f"Transfer group {self.key} has no issue"
            raise ValueError(msg)
        return TransferIssue(
            key=self.key,
            asset_id=self.asset_id,
            date_time=self.anchor,
            issue=self.issue,
            leg_ids=self.leg_ids,
            legs=[
                TransferIssueLeg(
                    id=TransactionId(leg.id or 0),
                    date_time=leg.date_time,
                    quantity=leg.quantity,
                    account_id=leg.account_id,
                    asset_id=leg.asset_id,
                )
                for leg in self.legs
            ],
        )


class TransferMatcher:
    """Group TRANSFER legs and classify the groups that need a human decision.

    Output depends only on the rows passed in (their quantities, timestamps and
    ``transfer_group_id`` / ``separated`` flags); nothing is cached between calls.
    """

    def __init__(self, tolerance: TransferTolerance | None = None) -> None:
        self.tolerance = tolerance or TransferTolerance()

    def group(self, transactions: Iterable[LedgerTransaction]) -> list[TransferGroup]:
        matched: dict[TransferGroupId, list[LedgerTransaction]] = defaultdict(list)
        unresolved: dict[AssetId, list[LedgerTransaction]] = defaultdict(list)

        for tx in sorted(transactions, key=ledger_sort_key):
            if tx.tx_type != TxType.TRANSFER or tx.separated:
                continue
            if tx.transfer_group_id is not None:
                matched[tx.transfer_group_id].append(tx)
            else:
                unresolved[tx.asset_id].append(tx)

        groups = [self._classify_matched(group_id, legs) for group_id, legs in matched.items()]
        for asset_id, legs in unresolved.items():
            for cluster in self._cluster(legs):
                groups.append(self._classify_cluster(asset_id, cluster))

        groups.sort(key=lambda group: (group.anchor, group.asset_id, group.key))
        return groups

    def diagnose(self, transactions: Iterable[LedgerTransaction]) -> list[TransferIssue]:
        return [group.to_issue() for group in self.group(transactions) if group.issue is not None]

    def _cluster(self, legs: list[LedgerTransaction]) -> list[list[LedgerTransaction]]:
        """Split chronologically sorted legs into windows anchored at their earliest leg."""
        clusters: list[list[LedgerTransaction]] = []
        current: list[LedgerTransaction] = []
        anchor: datetime | None = None
        for leg in legs:
            if anchor is not None and leg.date_time - anchor <= self.tolerance.match_window:
                current.append(leg)
                continue
            if current:
                clusters.append(current)
            current = [leg]
            anchor = leg.date_time
        if current:
            clusters.append(current)
        return clusters

    def _classify_matched(self, group_id: TransferGroupId, legs: list[LedgerTransaction]) -> TransferGroup:
        group = TransferGroup(asset_id=legs[0].asset_id, legs=legs, transfer_group_id=group_id)
        if len(legs) == 1:
            group.issue = TransferIssueKind.UNMATCHED
        elif len({leg.asset_id for leg in legs}) > 1 or not group.sources or not group.destinations:
            group.issue = TransferIssueKind.INVALID_LEGS
        return group

    def _classify_cluster(self, asset_id: AssetId, legs: list[LedgerTransaction]) -> TransferGroup:
        group = TransferGroup(asset_id=asset_id, legs=legs)
        if len(legs) == 1:
            group.issue = TransferIssueKind.UNMATCHED
            return group
        if len(legs) > 2:
            group.issue = TransferIssueKind.AMBIGUOUS
            return group

        first, second = legs
        if first.account_id == second.account_id or (first.quantity > 0) == (second.quantity > 0):
            group.issue = TransferIssueKind.INVALID_LEGS
            return group

        sent, received = (first, second) if first.quantity < 0 else (second, first)
        # Negative residual: the destination received less than the source sent.
        residual = sent.quantity + received.quantity
        if abs(residual) <= self.tolerance.quantity_epsilon:
            return group
        if residual < 0 and -residual <= self.tolerance.fee_allowance(sent.quantity):
            group.issue = TransferIssueKind.FEE_MISMATCH
        else:
            group.issue = TransferIssueKind.INVALID_LEGS
        return group
