from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import FastAPI

from tenant_billing.agents.health import SweeperHealth
from tenant_billing.core.config import Settings, settings
from tenant_billing.core.subscriptions import ExpiredSubscription, SubscriptionService

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically retires paid subscriptions whose period ended without renewal."""

    def __init__(self, service: SubscriptionService | None = None, config: Settings = settings) -> None:
        self.health = SweeperHealth(name="expiry-sweeper", ready=True)
        self._service = service or SubscriptionService(config=config)
        self._config = config
        self._stop_event = asyncio.Event()

    async def stop(self) -> None:
        self._stop_event.set()

    async def sweep_once(self) -> list[ExpiredSubscription]:
        self.health.sweep_started()
        try:
            expired = await self._service.process_expired_subscriptions()
        except Exception as exc:
            self.health.sweep_failed(exc)
            raise
        self.health.sweep_finished(len(expired))
        logger.info("Expiry sweep finished expired=%d", len(expired))
        return expired

    async def run(self) -> None:
        retry_delay = 1
        while not self._stop_event.is_set():
            try:
                await self.sweep_once()
                retry_delay = 1
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._config.expiry_sweep_interval_seconds
                )
            except asyncio.TimeoutError:
                continue
            except Exception:
                logger.exception(
                    "Expiry sweep failed consecutive_failures=%d", self.health.consecutive_failures
                )
                await asyncio.sleep(retry_delay)
                retry_delay = min(retry_delay * 2, self._config.expiry_sweep_max_retry_delay_seconds)


expiry_sweeper = ExpirySweeper()
app = FastAPI(title="Tenant Billing Expiry Sweeper")


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO)
    app.state.task = asyncio.create_task(expiry_sweeper.run())


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await expiry_sweeper.stop()
    task: asyncio.Task[None] = app.state.task
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


@app.get("/health", tags=["system"])
async def health() -> dict[str, object]:
    return expiry_sweeper.health.payload()


@app.get("/ready", tags=["system"])
async def ready() -> dict[str, bool]:
    return {"ready": expiry_sweeper.health.ready}
