from __future__ import annotations

from functools import lru_cache

from tenant_billing.core.config import settings
from tenant_billing.core.errors import UnknownPaymentProviderError
from tenant_billing.core.providers.lemonsqueezy_provider import LemonSqueezyProvider
from tenant_billing.core.providers.paddle_provider import PaddleProvider
from tenant_billing.core.providers.polar_provider import PolarProvider
from tenant_billing.core.providers.stripe_provider import StripeProvider
from tenant_billing.core.providers.types import PaymentProvider

PAYMENT_PROVIDERS: dict[str, type[PaymentProvider]] = {
    StripeProvider.name: StripeProvider,
    LemonSqueezyProvider.name: LemonSqueezyProvider,
    PaddleProvider.name: PaddleProvider,
    PolarProvider.name: PolarProvider,
}


def normalize_provider_name(name: str | None) -> str:
    return (name or settings.payment_provider).strip().lower()


@lru_cache
def _build_provider(name: str) -> PaymentProvider:
    provider_cls = PAYMENT_PROVIDERS.get(name)
    if provider_cls is None:
        raise UnknownPaymentProviderError(name)
    return provider_cls()


def get_payment_provider(name: str | None = None) -> PaymentProvider:
    """Return the shared adapter for ``name`` (the configured default when omitted).

    Construction validates the provider's credentials, so a misconfigured
    provider fails on first use rather than mid-webhook.
    """
    return _build_provider(normalize_provider_name(name))


def reset_payment_providers() -> None:
    _build_provider.cache_clear()
