"""Antifraud decision engine.

Rules run in a fixed order and stop at the first rejection:
adaptive IP block, IP velocity, CPF blacklist, card BIN blacklist.
Every rejection and every block activation is written to the audit sink.
"""

import re
import time
from datetime import timedelta
from enum import Enum

from pydantic import BaseModel

from fluxpay.common.audit import AuditEntry, AuditService
from fluxpay.common.config import settings
from fluxpay.common.counter_store import CounterStore
from fluxpay.common.logging import logger, mask_cpf
from fluxpay.common.metrics import antifraud_ip_blocks_total, antifraud_rejections_total
from fluxpay.services.antifraud.rate_limiter import RateLimiter

# Repeated-digit CPFs pass naive length checks but are never issued.
CPF_BLACKLIST: frozenset[str] = frozenset(str(d) * 11 for d in range(10))
BIN_BLACKLIST: frozenset[str] = frozenset({"000000", "111111", "999999"})

AUDIT_ACTOR = "system:antifraud"


class AntifraudRule(str, Enum):
    ADAPTIVE_IP_BLOCK = "AdaptiveIpBlock"
    IP_VELOCITY = "IpVelocity"
    CPF_BLACKLIST = "CpfBlacklist"
    BIN_BLACKLIST = "BinBlacklist"


REJECTION_REASONS: dict[AntifraudRule, str] = {
    AntifraudRule.ADAPTIVE_IP_BLOCK: "IP address is temporarily blocked due to suspicious activity",
    AntifraudRule.IP_VELOCITY: "IP address exceeded velocity limit",
    AntifraudRule.CPF_BLACKLIST: "CPF is on blacklist",
    AntifraudRule.BIN_BLACKLIST: "Card BIN is on blacklist",
}


class AntifraudDecision(BaseModel):
    allowed: bool
    triggered_rule: AntifraudRule | None = None
    reason: str | None = None


def _digits(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


class AntifraudService:
    """Screens payment attempts before they reach a PSP."""

    def __init__(
        self,
        store: CounterStore,
        audit: AuditService,
        rate_limiter: RateLimiter | None = None,
        clock=time.time,
        service_name: str = "antifraud",
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock
        self.rate_limiter = rate_limiter or RateLimiter(store, clock=clock)
        self.service_name = service_name
        self.ip_velocity_limit = settings.antifraud_ip_velocity_limit
        self.ip_velocity_window = timedelta(seconds=settings.antifraud_ip_velocity_window_seconds)
        self.failed_attempts_threshold = settings.antifraud_failed_attempts_threshold
        self.failed_attempts_window = timedelta(seconds=settings.antifraud_failed_attempts_window_seconds)
        self.ip_block_seconds = settings.antifraud_ip_block_seconds

    @staticmethod
    def _blocked_key(ip: str) -> str:
        return f"antifraud:blocked:{ip}"

    async def is_ip_blocked(self, ip: str) -> bool:
        return await self.store.exists(self._blocked_key(ip))

    async def check_payment(
        self,
        ip: str,
        cpf: str | None = None,
        card_bin: str | None = None,
        amount_cents: int = 0,
    ) -> AntifraudDecision:
        if await self.is_ip_blocked(ip):
            return self._reject(AntifraudRule.ADAPTIVE_IP_BLOCK, ip, cpf, card_bin, amount_cents)

        velocity = await self.rate_limiter.check_rate_limit(
            f"ip:{ip}", self.ip_velocity_limit, self.ip_velocity_window
        )
        if not velocity.allowed:
            return self._reject(AntifraudRule.IP_VELOCITY, ip, cpf, card_bin, amount_cents)

        if cpf and _digits(cpf) in CPF_BLACKLIST:
            return self._reject(AntifraudRule.CPF_BLACKLIST, ip, cpf, card_bin, amount_cents)

        if card_bin and _digits(card_bin)[:6] in BIN_BLACKLIST:
            return self._reject(AntifraudRule.BIN_BLACKLIST, ip, cpf, card_bin, amount_cents)

        return AntifraudDecision(allowed=True)

    async def record_failed_attempt(self, ip: str) -> bool:
        """Count one failed attempt; returns True when this attempt activated a block."""

        now_ms = int(self.clock() * 1000)
        window_ms = int(self.failed_attempts_window.total_seconds() * 1000)
        count = await self.store.append_and_count(f"antifraud:failed:{ip}", now_ms, window_ms)
        if count < self.failed_attempts_threshold:
            return False
        await self.store.set_with_expiry(self._blocked_key(ip), "1", self.ip_block_seconds)
        antifraud_ip_blocks_total.labels(service=self.service_name).inc()
        logger.warning("adaptive ip block activated ip=%s failed_attempts=%s", ip, count)
        self.audit.log(
            AuditEntry(
                actor=AUDIT_ACTOR,
                action="antifraud.ip_blocked",
                resource_type="ip_address",
                resource_id=ip,
                changes={
                    "failed_attempts": count,
                    "window_seconds": int(self.failed_attempts_window.total_seconds()),
                    "block_seconds": self.ip_block_seconds,
                },
            )
        )
        return True

    def _reject(
        self,
        rule: AntifraudRule,
        ip: str,
        cpf: str | None,
        card_bin: str | None,
        amount_cents: int,
    ) -> AntifraudDecision:
        antifraud_rejections_total.labels(service=self.service_name, rule=rule.value).inc()
        logger.warning("antifraud rejection rule=%s ip=%s amount_cents=%s", rule.value, ip, amount_cents)
        self.audit.log(
            AuditEntry(
                actor=AUDIT_ACTOR,
                action="antifraud.rule_triggered",
                resource_type="payment",
                changes={
                    "ip_address": ip,
                    "rule": rule.value,
                    "cpf": mask_cpf(cpf),
                    "bin": card_bin,
                    "amount_cents": amount_cents,
                },
            )
        )
        return AntifraudDecision(allowed=False, triggered_rule=rule, reason=REJECTION_REASONS[rule])
