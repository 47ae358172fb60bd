"""
Usage Ledger

Append-only audit trail of send attempts. Every counter increment writes one
event in the same transaction, so the ledger and the counters never disagree
about what was counted.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from ..core.period import period_start_datetime
from ..persistence.database import Database, Transaction, get_database
from ..persistence.models import UsageEvent
from ..persistence.repository import UsageEventRepository

logger = structlog.get_logger()


@dataclass
class UsageHistoryPage:
    events: List[UsageEvent]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


class UsageLedger:
    """Writes and reads usage events."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.events = UsageEventRepository(self.db)

    def append(
        self,
        tx: Transaction,
        tenant_id: str,
        resource_type: str,
        recipient: str,
        is_overage: bool,
        incremental_cost: Decimal,
        timestamp: datetime,
        event_type: str = "sent",
        subject: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> UsageEvent:
        """Record one send. Must run inside the transaction that counted it."""
        event = UsageEvent(
            event_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            resource_type=resource_type,
            recipient=recipient,
            event_type=event_type,
            is_overage=is_overage,
            incremental_cost=incremental_cost,
            timestamp=timestamp.isoformat(),
            # Previews only; message bodies are not stored
            subject=subject[:200] if subject else None,
            provider=provider,
        )
        return self.events.append(event, tx=tx)

    def history(
        self,
        tenant_id: str,
        resource_type: str,
        limit: int = 50,
        offset: int = 0,
    ) -> UsageHistoryPage:
        events = self.events.list_for_tenant(tenant_id, resource_type, limit=limit, offset=offset)
        total = self.events.count(tenant_id, resource_type)
        return UsageHistoryPage(events=events, total=total, limit=limit, offset=offset)

    def count_in_period(
        self,
        tenant_id: str,
        resource_type: str,
        period_start: date,
        period_end: date,
        tx: Optional[Transaction] = None,
    ) -> int:
        """Number of events in [period_start, period_end)."""
        return self.events.count_in_range(
            tenant_id,
            resource_type,
            period_start_datetime(period_start),
            period_start_datetime(period_end),
            tx=tx,
        )
