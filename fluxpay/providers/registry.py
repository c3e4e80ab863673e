"""Enum-keyed lookup of PSP adapters."""

from fluxpay.common.config import settings
from fluxpay.providers.base import ProviderAdapter, ProviderName, ProviderNotSupportedError
from fluxpay.providers.gerencianet import GerencianetAdapter
from fluxpay.providers.pagarme import PagarMeAdapter


class ProviderRegistry:
    """Maps provider names (case-insensitive) to configured adapters."""

    def __init__(self, adapters: dict[ProviderName, ProviderAdapter]) -> None:
        self._adapters = dict(adapters)

    def names(self) -> list[str]:
        return [name.value for name in self._adapters]

    def get(self, provider: str | ProviderName) -> ProviderAdapter:
        try:
            key = ProviderName(provider.lower() if isinstance(provider, str) else provider)
        except ValueError as exc:
            raise ProviderNotSupportedError(f"Provider '{provider}' is not supported") from exc
        adapter = self._adapters.get(key)
        if adapter is None:
            raise ProviderNotSupportedError(f"Provider '{provider}' is not configured")
        return adapter


def build_default_registry() -> ProviderRegistry:
    """Adapters configured from environment settings."""

    return ProviderRegistry(
        {
            ProviderName.PAGARME: PagarMeAdapter(
                api_key=settings.pagarme_api_key,
                webhook_secret=settings.pagarme_webhook_secret,
                sandbox=settings.pagarme_sandbox,
                timeout_seconds=settings.provider_timeout_seconds,
            ),
            ProviderName.GERENCIANET: GerencianetAdapter(
                client_id=settings.gerencianet_client_id,
                client_secret=settings.gerencianet_client_secret,
                webhook_secret=settings.gerencianet_webhook_secret,
                sandbox=settings.gerencianet_sandbox,
                timeout_seconds=settings.provider_timeout_seconds,
            ),
        }
    )
