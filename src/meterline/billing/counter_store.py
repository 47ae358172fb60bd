"""
Usage Counter Store

One counter per tenant and resource type, scoped to the current billing
period. Every read that could observe a stale period and every increment runs
inside a single transaction holding the counter's lock:

1. Insert a zeroed row if the tenant has never been metered (no-op otherwise)
2. Lock and read the row, then read the clock
3. If the stored period is older than the current one, reset it
4. Apply the change and append the ledger event

Concurrent sends for one tenant serialize on step 2, so no increment is lost.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from ..config import Settings
from ..core.catalog import ResourceType
from ..core.overage import ZERO_MONEY, overage_cost, to_money
from ..core.period import as_utc, current_period_start, utcnow
from ..errors import ResourceNotActive, TenantNotFound
from ..persistence.database import Database, Transaction, get_database
from ..persistence.models import CounterSnapshot, TenantBillingConfig
from ..persistence.repository import MeteringStateRepository, TenantConfigRepository
from .ledger import UsageLedger
from .terms import BillingTerms, resolve_terms

logger = structlog.get_logger()

Clock = Callable[[], datetime]


@dataclass
class SendResult:
    """Outcome of counting one send."""
    tenant_id: str
    resource_type: str
    is_overage: bool
    incremental_cost: Decimal
    new_total: int
    remaining: int
    event_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "resource_type": self.resource_type,
            "is_overage": self.is_overage,
            "incremental_cost": str(self.incremental_cost),
            "new_total": self.new_total,
            "remaining": self.remaining,
            "event_id": self.event_id,
        }


class UsageCounterStore:
    """
    Transactional per-tenant usage counters.

    Args:
        db: Database to use (defaults to the shared instance)
        settings: Billing defaults for tenants with empty configuration
        clock: Returns "now"; injected so period boundaries can be tested
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db or get_database()
        self.settings = settings or Settings.from_env()
        self.clock = clock
        self.tenants = TenantConfigRepository(self.db)
        self.counters = MeteringStateRepository(self.db)
        self.ledger = UsageLedger(self.db)

    def _now(self) -> datetime:
        return as_utc(self.clock())

    def _require_tenant(self, tenant_id: str, tx: Transaction) -> TenantBillingConfig:
        config = self.tenants.get(tenant_id, tx=tx)
        if config is None:
            raise TenantNotFound(tenant_id)
        return config

    def _current_snapshot(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        tx: Transaction,
    ) -> Tuple[CounterSnapshot, datetime]:
        """
        Lock the counter row, creating it or rolling it into the current period as needed.

        Returns the snapshot and the time read once the lock was held; a caller
        that waited for the lock across a month boundary sees the new month.
        """
        self.counters.ensure(tenant_id, resource_type.value, current_period_start(self._now()), tx=tx)
        snapshot = self.counters.get(tenant_id, resource_type.value, tx=tx)
        now = self._now()
        period_start = current_period_start(now)

        # A stored period later than "now" (clock skew between workers) is kept as-is
        if snapshot.period_start < period_start:
            logger.info(
                "counter_rolled_over",
                tenant_id=tenant_id,
                resource_type=resource_type.value,
                previous_period=snapshot.period_start.isoformat(),
                period_start=period_start.isoformat(),
                units_discarded=snapshot.units_consumed,
            )
            snapshot.units_consumed = 0
            snapshot.accrued_overage_charge = ZERO_MONEY
            snapshot.period_start = period_start
            self.counters.save(snapshot, tx=tx)
        return snapshot, now

    def get_or_init_counter(self, tenant_id: str, resource_type: Any) -> CounterSnapshot:
        """Current-period counter for a tenant, created on first access."""
        resource = ResourceType.parse(resource_type)
        with self.db.transaction() as tx:
            self._require_tenant(tenant_id, tx)
            snapshot, _ = self._current_snapshot(tenant_id, resource, tx)
            return snapshot

    def snapshot_with_terms(self, tenant_id: str, resource_type: Any):
        """Counter plus the billing terms it is measured against, read in one transaction."""
        resource = ResourceType.parse(resource_type)
        with self.db.transaction() as tx:
            config = self._require_tenant(tenant_id, tx)
            snapshot, _ = self._current_snapshot(tenant_id, resource, tx)
        return snapshot, resolve_terms(config, resource, self.settings)

    def record_send(
        self,
        tenant_id: str,
        resource_type: Any,
        recipient: str,
        event_type: str = "sent",
        subject: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> SendResult:
        """
        Count one outbound unit.

        Raises:
            TenantNotFound: the tenant has no billing configuration
            ResourceNotActive: SMS without an active package
        """
        resource = ResourceType.parse(resource_type)

        with self.db.transaction() as tx:
            config = self._require_tenant(tenant_id, tx)
            terms: BillingTerms = resolve_terms(config, resource, self.settings)
            if not terms.active:
                raise ResourceNotActive(tenant_id, resource.value)

            snapshot, now = self._current_snapshot(tenant_id, resource, tx)
            snapshot.units_consumed += 1
            new_total = snapshot.units_consumed
            is_overage = new_total > terms.limit
            cost = overage_cost(new_total, terms.limit, terms.overage_rate)
            snapshot.accrued_overage_charge = to_money(snapshot.accrued_overage_charge + cost)
            self.counters.save(snapshot, tx=tx)

            event = self.ledger.append(
                tx,
                tenant_id=tenant_id,
                resource_type=resource.value,
                recipient=recipient,
                is_overage=is_overage,
                incremental_cost=cost,
                timestamp=now,
                event_type=event_type,
                subject=subject,
                provider=provider,
            )

        if is_overage:
            logger.info(
                "usage_overage_recorded",
                tenant_id=tenant_id,
                resource_type=resource.value,
                new_total=new_total,
                limit=terms.limit,
                cost=str(cost),
            )
        else:
            logger.debug("usage_recorded", tenant_id=tenant_id, resource_type=resource.value, new_total=new_total)

        return SendResult(
            tenant_id=tenant_id,
            resource_type=resource.value,
            is_overage=is_overage,
            incremental_cost=cost,
            new_total=new_total,
            remaining=max(0, terms.limit - new_total),
            event_id=event.event_id,
        )
