"""Daily diff of internal payment state against PSP transaction reports.

Reconciliation only reports; it never mutates payments. Each mismatch and
each provider failure lands in the audit trail, plus one summary per run.
"""

import asyncio
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field
from sqlalchemy import select

from fluxpay.common.audit import AuditEntry, AuditService
from fluxpay.common.config import settings
from fluxpay.common.logging import logger
from fluxpay.common.metrics import reconciliation_errors_total, reconciliation_mismatches_total
from fluxpay.common.models import Payment, PaymentStatus
from fluxpay.common.tracing import tracer
from fluxpay.providers.base import ProviderTransaction
from fluxpay.providers.registry import ProviderRegistry

AUDIT_ACTOR = "system:reconciliation"

# Internal status -> PSP statuses (lowercase) that count as the same state.
STATUS_EQUIVALENTS: dict[str, frozenset[str]] = {
    PaymentStatus.PENDING: frozenset({"pending", "waiting_payment", "active"}),
    PaymentStatus.AUTHORIZED: frozenset({"authorized", "pre_authorized"}),
    PaymentStatus.PAID: frozenset({"paid", "captured", "concluida"}),
    PaymentStatus.REFUNDED: frozenset({"refunded", "canceled"}),
    PaymentStatus.FAILED: frozenset({"failed", "refused", "error"}),
    PaymentStatus.EXPIRED: frozenset({"expired", "removida_pelo_usuario_recebedor", "removida_pelo_psp"}),
    PaymentStatus.CANCELLED: frozenset({"cancelled", "canceled"}),
}


def statuses_equivalent(internal_status: str, provider_status: str) -> bool:
    return provider_status.strip().lower() in STATUS_EQUIVALENTS.get(internal_status, frozenset())


class MismatchType(str, Enum):
    MISSING_IN_PROVIDER = "missing_in_provider"
    STATUS_MISMATCH = "status_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    STATUS_AND_AMOUNT_MISMATCH = "status_and_amount_mismatch"


class ReconciliationMismatch(BaseModel):
    payment_id: str
    provider: str
    provider_payment_id: str
    internal_status: str
    provider_status: str
    internal_amount_cents: int
    provider_amount_cents: int
    mismatch_type: MismatchType
    details: str


class ReconciliationReport(BaseModel):
    date: date
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_transactions: int = 0
    matched: int = 0
    mismatched: int = 0
    mismatches: list[ReconciliationMismatch] = Field(default_factory=list)
    failed_providers: list[str] = Field(default_factory=list)


def compare(payment: Payment, reported: ProviderTransaction | None) -> ReconciliationMismatch | None:
    """Mismatch for one payment against its report row, or None when they agree."""

    if reported is None:
        return ReconciliationMismatch(
            payment_id=payment.payment_id,
            provider=payment.provider,
            provider_payment_id=payment.provider_payment_id,
            internal_status=payment.status,
            provider_status="not_found",
            internal_amount_cents=payment.amount_cents,
            provider_amount_cents=0,
            mismatch_type=MismatchType.MISSING_IN_PROVIDER,
            details="Payment not found in provider report",
        )
    status_match = statuses_equivalent(payment.status, reported.status)
    amount_match = payment.amount_cents == reported.amount_cents
    if status_match and amount_match:
        return None
    if not status_match and not amount_match:
        mismatch_type = MismatchType.STATUS_AND_AMOUNT_MISMATCH
    elif not status_match:
        mismatch_type = MismatchType.STATUS_MISMATCH
    else:
        mismatch_type = MismatchType.AMOUNT_MISMATCH
    return ReconciliationMismatch(
        payment_id=payment.payment_id,
        provider=payment.provider,
        provider_payment_id=payment.provider_payment_id,
        internal_status=payment.status,
        provider_status=reported.status,
        internal_amount_cents=payment.amount_cents,
        provider_amount_cents=reported.amount_cents,
        mismatch_type=mismatch_type,
        details=f"Status match: {status_match}, Amount match: {amount_match}",
    )


def seconds_until_next_run(now: datetime, run_hour_utc: int) -> float:
    next_run = datetime.combine(now.date(), time(hour=run_hour_utc), tzinfo=timezone.utc)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


class ReconciliationService:
    def __init__(
        self,
        session_factory,
        registry: ProviderRegistry,
        audit: AuditService,
        service_name: str = "reconciliation",
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.audit = audit
        self.service_name = service_name
        self.run_hour_utc = settings.reconciliation_run_hour_utc

    def _load_payments(self, day: date) -> dict[str, list[Payment]]:
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        with self.session_factory() as db:
            rows = db.execute(
                select(Payment)
                .where(
                    Payment.created_at >= start,
                    Payment.created_at < end,
                    Payment.provider_payment_id.is_not(None),
                )
                .order_by(Payment.created_at)
            ).scalars()
            grouped: dict[str, list[Payment]] = defaultdict(list)
            for payment in rows:
                grouped[payment.provider].append(payment)
        return grouped

    async def reconcile(self, day: date) -> ReconciliationReport:
        """Compare every PSP-backed payment created on `day` (UTC) with its PSP's report."""

        with tracer.start_as_current_span("reconciliation.run") as span:
            span.set_attribute("fluxpay.reconciliation_date", day.isoformat())
            report = ReconciliationReport(date=day)
            entries: list[AuditEntry] = []

            for provider, payments in self._load_payments(day).items():
                report.total_transactions += len(payments)
                try:
                    adapter = self.registry.get(provider)
                    reported = await adapter.get_transaction_report(day)
                except Exception as exc:
                    report.failed_providers.append(provider)
                    reconciliation_errors_total.labels(service=self.service_name, provider=provider).inc()
                    logger.exception("reconciliation provider failed provider=%s date=%s: %s", provider, day, exc)
                    entries.append(
                        AuditEntry(
                            actor=AUDIT_ACTOR,
                            action="reconciliation_error",
                            resource_type="provider",
                            resource_id=provider,
                            changes={"date": day.isoformat(), "error": str(exc), "payments": len(payments)},
                        )
                    )
                    continue

                by_id = {row.provider_payment_id: row for row in reported}
                for payment in payments:
                    mismatch = compare(payment, by_id.get(payment.provider_payment_id))
                    if mismatch is None:
                        continue
                    report.mismatches.append(mismatch)
                    reconciliation_mismatches_total.labels(
                        service=self.service_name,
                        provider=provider,
                        mismatch_type=mismatch.mismatch_type.value,
                    ).inc()
                    entries.append(
                        AuditEntry(
                            actor=AUDIT_ACTOR,
                            action="reconciliation.mismatch_detected",
                            resource_type="payment",
                            resource_id=payment.payment_id,
                            merchant_id=payment.merchant_id,
                            changes=mismatch.model_dump(mode="json"),
                        )
                    )

            report.mismatched = len(report.mismatches)
            report.matched = report.total_transactions - report.mismatched
            entries.append(
                AuditEntry(
                    actor=AUDIT_ACTOR,
                    action="reconciliation.completed",
                    resource_type="reconciliation",
                    resource_id=day.isoformat(),
                    changes={
                        "total": report.total_transactions,
                        "matched": report.matched,
                        "mismatched": report.mismatched,
                        "failed_providers": report.failed_providers,
                    },
                )
            )
            with self.session_factory() as db:
                for entry in entries:
                    self.audit.log(entry, db=db)
                db.commit()

            logger.info(
                "reconciliation completed date=%s total=%s matched=%s mismatched=%s failed_providers=%s",
                day,
                report.total_transactions,
                report.matched,
                report.mismatched,
                report.failed_providers,
            )
            return report

    async def run_forever(self) -> None:
        """Reconcile the previous UTC day once a day at the configured hour."""

        while True:
            await asyncio.sleep(seconds_until_next_run(datetime.now(timezone.utc), self.run_hour_utc))
            day = datetime.now(timezone.utc).date() - timedelta(days=1)
            try:
                await self.reconcile(day)
            except Exception as exc:
                logger.exception("scheduled reconciliation failed date=%s: %s", day, exc)
