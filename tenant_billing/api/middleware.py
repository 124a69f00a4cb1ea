from __future__ import annotations

from collections.abc import Awaitable, Callable
from urllib.parse import urlparse
from uuid import UUID

from fastapi import HTTPException, Request
from starlette import status
from starlette.responses import JSONResponse, Response

from tenant_billing.core.config import Settings, settings
from tenant_billing.core.errors import InvalidReturnUrlError, WebhookPayloadTooLargeError


async def tenant_header_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    # The upstream gateway authenticates the caller and forwards the tenant.
    tenant_header = request.headers.get("X-Tenant-Id")
    tenant_id: UUID | None = None
    if tenant_header:
        try:
            tenant_id = UUID(tenant_header)
        except ValueError:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "InvalidTenantHeader", "message": "Invalid X-Tenant-Id header"},
            )

    request.state.tenant_id = tenant_id
    return await call_next(request)


def require_tenant_id(request: Request) -> UUID:
    tenant_id: UUID | None = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Tenant-Id header",
        )
    return tenant_id


async def read_limited_body(request: Request, max_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise WebhookPayloadTooLargeError(f"Request body exceeds {max_bytes} bytes")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise WebhookPayloadTooLargeError(f"Request body exceeds {max_bytes} bytes")
    return bytes(body)


def resolve_return_url(url: str | None, config: Settings = settings) -> str:
    """Only redirect back to the configured frontend."""
    if not url:
        return config.default_return_url()

    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or parsed.netloc != config.frontend_host():
        raise InvalidReturnUrlError(f"Return URL must point to {config.frontend_url}")
    return url
