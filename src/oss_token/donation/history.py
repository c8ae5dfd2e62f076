"""Read-side rollups over recorded donations."""

from __future__ import annotations

from decimal import Decimal

from ..models import IssuanceStatus, PledgeRecord, ProjectDonationStats
from ..store import Collections, DocumentStore


class HistoryAggregator:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def project_records(self, project_id: str) -> list[PledgeRecord]:
        docs = await self._store.query(Collections.PLEDGE_RECORDS, project_id=project_id)
        return [PledgeRecord.model_validate(doc) for doc in docs]

    async def project_stats(self, project_id: str) -> ProjectDonationStats:
        records = await self.project_records(project_id)
        issued = [
            record.issuance.amount or Decimal(0)
            for record in records
            if record.issuance.status == IssuanceStatus.COMPLETED
        ]
        return ProjectDonationStats(
            total_amount=sum((record.amount for record in records), Decimal(0)),
            donation_count=len(records),
            donor_count=len({record.donor_address for record in records}),
            total_tokens_issued=sum(issued, Decimal(0)),
            last_donation_at=max((record.created_at for record in records), default=None),
        )

    async def total_donations(self, project_id: str) -> Decimal:
        """Cumulative native amount donated to ``project_id``; feeds the price curve."""

        records = await self.project_records(project_id)
        return sum((record.amount for record in records), Decimal(0))

    async def donor_history(self, donor_address: str) -> list[PledgeRecord]:
        docs = await self._store.query(Collections.PLEDGE_RECORDS, donor_address=donor_address)
        records = [PledgeRecord.model_validate(doc) for doc in docs]
        return sorted(records, key=lambda record: record.created_at, reverse=True)
