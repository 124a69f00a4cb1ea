"""Helpers shared by the provider adapters for picking apart webhook payloads."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from uuid import UUID

from tenant_billing.core.errors import WebhookPayloadError
from tenant_billing.models.subscription import SubscriptionStatus

StatusTable = Mapping[str, SubscriptionStatus | None]


def build_event_id(raw_payload: bytes) -> str:
    """Dedupe key for providers whose deliveries carry no event id of their own.

    The resource id in a payload names the order or subscription, not the delivery,
    so keying on it would drop every later update to the same resource. A retry
    resends the same bytes, so the payload hash is stable across redeliveries.
    """
    return f"payload_{hashlib.sha256(raw_payload).hexdigest()}"


def parse_json_object(raw_payload: bytes) -> dict:
    try:
        body = json.loads(raw_payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookPayloadError("Webhook payload is not valid JSON") from exc
    if not isinstance(body, dict):
        raise WebhookPayloadError("Webhook payload must be a JSON object")
    return body


def get_path(obj: object, *keys: str | int) -> object | None:
    """Walk nested mappings, lists and Stripe objects; ``None`` on the first miss."""
    current = obj
    for key in keys:
        if current is None:
            return None
        try:
            current = current[key]  # type: ignore[index]
        except (KeyError, IndexError, TypeError):
            return None
    return current


def optional_str(value: object | None) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, Mapping):
        return optional_str(value.get("id"))
    return str(value)


def require_str(value: object | None, field_name: str) -> str:
    text = optional_str(value)
    if text is None:
        raise WebhookPayloadError(f"Webhook payload missing {field_name}")
    return text


def parse_tenant_id(value: object | None) -> UUID:
    if value is None or value == "":
        raise WebhookPayloadError("Webhook payload missing tenant_id metadata")
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise WebhookPayloadError(f"Invalid tenant_id in webhook metadata: {value}") from exc


def optional_int(value: object | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def from_unix(value: object | None) -> datetime | None:
    seconds = optional_int(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def from_iso(value: object | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as exc:
        raise WebhookPayloadError(f"Invalid timestamp in webhook payload: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def map_status(table: StatusTable, provider_status: str | None) -> SubscriptionStatus | None:
    if not provider_status:
        return None
    return table.get(provider_status)
