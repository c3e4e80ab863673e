"""Structured JSON logging with request/payment context fields."""

import logging
import re
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from fluxpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
merchant_id_ctx: ContextVar[str] = ContextVar("merchant_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

_PAN_RE = re.compile(r"\b\d{13,19}\b")
_CPF_RE = re.compile(r"\b\d{3}\.?\d{3}\.?\d{3}-?\d{2}\b")
_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
_SECRET_RE = re.compile(r"(api[_-]?key|secret|password|token)\s*[:=]\s*[^\s,}]+", re.IGNORECASE)


def mask_cpf(cpf: str | None) -> str | None:
    """Keep only the two check digits of a CPF."""

    if not cpf:
        return cpf
    digits = re.sub(r"\D", "", cpf)
    return "*" * max(len(digits) - 2, 0) + digits[-2:]


def _mask_email(match: re.Match) -> str:
    local, domain = match.group(1), match.group(2)
    masked = f"{local[0]}***{local[-1]}" if len(local) > 2 else "***"
    return f"{masked}@{domain}"


def mask_sensitive(text: str) -> str:
    """Mask card numbers, CPFs, e-mail addresses and secret-looking pairs in free text."""

    masked = _PAN_RE.sub("****-****-****-****", text)
    masked = _CPF_RE.sub(lambda m: mask_cpf(m.group(0)), masked)
    masked = _EMAIL_RE.sub(_mask_email, masked)
    return _SECRET_RE.sub(lambda m: f"{m.group(1)}=***MASKED***", masked)


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.merchant_id = merchant_id_ctx.get()
        record.payment_id = payment_id_ctx.get()
        return True


class SensitiveDataFilter(logging.Filter):
    """Render the message once and mask personal data before it is formatted."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = mask_sensitive(record.getMessage())
        record.args = None
        return True


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.addFilter(SensitiveDataFilter())
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(merchant_id)s %(payment_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("fluxpay")
