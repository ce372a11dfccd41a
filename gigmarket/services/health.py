import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import text

from gigmarket.api.v1.metrics import DEPENDENCY_HEALTH
from gigmarket.db.models import utcnow
from gigmarket.db.session import AsyncSessionLocal
from gigmarket.payments.provider import get_gateway
from gigmarket.settings import settings

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 5.0


@dataclass
class DependencyStatus:
    name: str
    healthy: bool
    latency_ms: float
    checked_at: datetime
    error: Optional[str] = None


class HealthMonitor:
    """
    Polls the database and the payment gateway in the background and caches
    the result. Requests consult the cache only; they never probe.
    """

    def __init__(
        self,
        interval: Optional[int] = None,
        critical_threshold: Optional[int] = None,
        session_factory=AsyncSessionLocal,
        gateway_factory=get_gateway,
    ):
        self.interval = interval or settings.HEALTH_CHECK_INTERVAL_SECONDS
        self.critical_threshold = critical_threshold or settings.HEALTH_CRITICAL_THRESHOLD
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self._statuses: dict[str, DependencyStatus] = {}
        self._running = False
        self._task = None

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Health monitor started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Health monitor stopped.")

    async def _loop(self):
        while self._running:
            try:
                await self.check_now()
            except Exception as e:
                logger.error(f"Error in health monitor: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    async def check_now(self) -> dict[str, DependencyStatus]:
        results = await asyncio.gather(
            self._probe("database", self._probe_database),
            self._probe("payment_gateway", self._probe_gateway),
        )
        for status in results:
            previous = self._statuses.get(status.name)
            if previous and previous.healthy != status.healthy:
                level = logging.INFO if status.healthy else logging.WARNING
                logger.log(level, f"Dependency {status.name} is now {'healthy' if status.healthy else 'critical'}")
            self._statuses[status.name] = status
            DEPENDENCY_HEALTH.labels(dependency=status.name).set(1 if status.healthy else 0)

        if self.is_degraded:
            logger.error(f"{self.critical_count} dependencies critical; rejecting API requests")
        return dict(self._statuses)

    async def _probe(self, name: str, probe: Callable[[], Awaitable[None]]) -> DependencyStatus:
        started = time.perf_counter()
        error = None
        try:
            await asyncio.wait_for(probe(), timeout=PROBE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            error = f"timed out after {PROBE_TIMEOUT_SECONDS}s"
        except Exception as e:
            error = str(e) or type(e).__name__
        latency = (time.perf_counter() - started) * 1000
        return DependencyStatus(
            name=name,
            healthy=error is None,
            latency_ms=round(latency, 1),
            checked_at=utcnow(),
            error=error,
        )

    async def _probe_database(self):
        async with self.session_factory() as session:
            await session.execute(text("SELECT 1"))

    async def _probe_gateway(self):
        if not await self.gateway_factory().ping():
            raise RuntimeError("gateway ping failed")

    @property
    def critical_count(self) -> int:
        return sum(1 for status in self._statuses.values() if not status.healthy)

    @property
    def is_degraded(self) -> bool:
        return self.critical_count >= self.critical_threshold

    def snapshot(self) -> dict[str, Any]:
        if not self._statuses:
            overall = "unknown"
        elif self.is_degraded:
            overall = "critical"
        elif self.critical_count:
            overall = "degraded"
        else:
            overall = "ok"

        dependencies = {}
        for name, status in self._statuses.items():
            entry = asdict(status)
            entry["checked_at"] = status.checked_at.isoformat()
            dependencies[name] = entry
        return {"status": overall, "critical": self.critical_count, "dependencies": dependencies}
