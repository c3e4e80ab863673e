"""Audit sink for security- and compliance-relevant decisions.

Every entry is persisted as an `AuditLog` row sealed with an HMAC over its
canonical JSON, and mirrored to the structured log.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from fluxpay.common import signature
from fluxpay.common.config import settings
from fluxpay.common.logging import logger
from fluxpay.common.models import AuditLog


class AuditEntry(BaseModel):
    """One audit event as produced by a component."""

    actor: str
    action: str
    resource_type: str
    resource_id: str | None = None
    merchant_id: str | None = None
    changes: dict[str, Any] = Field(default_factory=dict)


def _utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _canonical(row: AuditLog) -> str:
    return json.dumps(
        {
            "id": row.id,
            "merchant_id": row.merchant_id,
            "actor": row.actor,
            "action": row.action,
            "resource_type": row.resource_type,
            "resource_id": row.resource_id,
            "changes": row.changes,
            "created_at": _utc_naive(row.created_at).isoformat(),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


class AuditService:
    """Writes signed audit rows through a SQLAlchemy session factory."""

    def __init__(self, session_factory, signing_key: str | None = None) -> None:
        self.session_factory = session_factory
        self.signing_key = signing_key if signing_key is not None else settings.audit_signing_key

    def _build_row(self, entry: AuditEntry) -> AuditLog:
        # Round-trip through JSON so the sealed payload matches what the column stores.
        changes = json.loads(json.dumps(entry.changes, default=str))
        row = AuditLog(
            id=str(uuid4()),
            merchant_id=entry.merchant_id,
            actor=entry.actor,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            changes=changes,
            created_at=datetime.now(timezone.utc),
            signature="",
        )
        row.signature = signature.sign(self.signing_key, _canonical(row))
        return row

    def log(self, entry: AuditEntry, db=None) -> AuditLog:
        """Persist one entry.

        With `db` the row joins the caller's transaction; otherwise it is
        committed in its own session.
        """

        row = self._build_row(entry)
        logger.info(
            "audit action=%s actor=%s resource=%s/%s",
            entry.action,
            entry.actor,
            entry.resource_type,
            entry.resource_id,
        )
        if db is not None:
            db.add(row)
            return row
        with self.session_factory() as own_db:
            own_db.add(row)
            own_db.commit()
        return row

    def verify(self, row: AuditLog) -> bool:
        """Check that a stored row has not been altered since it was written."""

        return signature.verify(self.signing_key, _canonical(row), row.signature)
