"""Queries over `webhook_deliveries` used by the retry worker.

These helpers keep the due-row selection and row locking in one place so the
worker loop only deals with one delivery at a time. A row is due when it is
FAILED with a past `next_retry_at`, or when it is still PENDING well after
creation, meaning its first attempt never ran to completion.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select

from fluxpay.common.metrics import webhook_deliveries_pending
from fluxpay.common.models import DeliveryStatus, WebhookDelivery


def _due_clause(now: datetime, max_attempts: int, pending_grace: timedelta):
    retry_due = (
        (WebhookDelivery.status == DeliveryStatus.FAILED)
        & (WebhookDelivery.next_retry_at.is_not(None))
        & (WebhookDelivery.next_retry_at <= now)
    )
    stranded = (WebhookDelivery.status == DeliveryStatus.PENDING) & (
        WebhookDelivery.created_at <= now - pending_grace
    )
    return or_(retry_due, stranded) & (WebhookDelivery.attempt_count < max_attempts)


def select_due_delivery_ids(
    db,
    max_attempts: int,
    now: datetime | None = None,
    pending_grace: timedelta = timedelta(minutes=5),
    limit: int = 500,
) -> list[str]:
    """Ids of deliveries the retry worker should attempt, oldest first."""

    now = now or datetime.now(timezone.utc)
    rows = db.execute(
        select(WebhookDelivery.id)
        .where(_due_clause(now, max_attempts, pending_grace))
        .order_by(func.coalesce(WebhookDelivery.next_retry_at, WebhookDelivery.created_at), WebhookDelivery.created_at)
        .limit(limit)
    ).all()
    return [row.id for row in rows]


def lock_due_delivery(
    db,
    delivery_id: str,
    max_attempts: int,
    now: datetime | None = None,
    pending_grace: timedelta = timedelta(minutes=5),
) -> WebhookDelivery | None:
    """Re-read one delivery under a row lock; None when another worker already took it."""

    now = now or datetime.now(timezone.utc)
    return db.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id, _due_clause(now, max_attempts, pending_grace))
        .with_for_update(skip_locked=True)
    ).scalar_one_or_none()


def update_delivery_backlog_metrics(db, service_name: str) -> int:
    """Refresh the pending-retry gauge and return its value."""

    pending = db.execute(
        select(func.count()).select_from(WebhookDelivery).where(WebhookDelivery.status == DeliveryStatus.FAILED)
    ).scalar_one()
    webhook_deliveries_pending.labels(service=service_name).set(float(pending))
    return int(pending)
