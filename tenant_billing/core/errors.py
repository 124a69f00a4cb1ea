from __future__ import annotations

from fastapi import status


class BillingError(Exception):
    code = "BillingError"
    status_code = status.HTTP_400_BAD_REQUEST


class PaymentProviderConfigError(BillingError):
    code = "PaymentProviderConfigError"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, provider: str, setting: str) -> None:
        super().__init__(f"{setting} is not configured for payment provider '{provider}'")
        self.provider = provider
        self.setting = setting


class UnknownPaymentProviderError(BillingError):
    code = "UnknownPaymentProvider"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unknown payment provider '{provider}'")
        self.provider = provider


class WebhookVerificationError(BillingError):
    code = "WebhookVerificationError"
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"{provider} webhook rejected: {reason}")
        self.provider = provider


class WebhookPayloadError(BillingError):
    code = "InvalidWebhookPayload"
    status_code = status.HTTP_400_BAD_REQUEST


class WebhookPayloadTooLargeError(BillingError):
    code = "PayloadTooLarge"
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class PriceNotFoundError(BillingError):
    code = "PriceNotFound"
    status_code = status.HTTP_404_NOT_FOUND


class TierNotFoundError(BillingError):
    code = "TierNotFound"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class TenantNotFoundError(BillingError):
    code = "TenantNotFound"
    status_code = status.HTTP_404_NOT_FOUND


class NoActiveCustomerError(BillingError):
    code = "NoActiveCustomer"
    status_code = status.HTTP_400_BAD_REQUEST


class NoActiveSubscriptionError(BillingError):
    code = "NoSubscription"
    status_code = status.HTTP_400_BAD_REQUEST


class SubscriptionNotManagedError(BillingError):
    code = "NotManaged"
    status_code = status.HTTP_400_BAD_REQUEST


class ProviderRequestError(BillingError):
    code = "ProviderRequestError"
    status_code = status.HTTP_502_BAD_GATEWAY


class InvalidReturnUrlError(BillingError):
    code = "InvalidReturnUrl"
    status_code = status.HTTP_400_BAD_REQUEST
