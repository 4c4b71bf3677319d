"""
Per-component health tracking with circuit-breaker semantics.

Every call that touches the persistent store or the LLM collaborator goes
through ``HealthMonitor.call(component, fn)``. The monitor keeps one record per
component name and moves it through:

    healthy --(failures >= degraded threshold)--> degraded
    healthy|degraded --(failures >= circuit threshold)--> circuit_open
    circuit_open --(cool-down elapsed)--> recovering (one probe admitted)
    recovering --(probe succeeds)--> healthy
    recovering --(probe fails)--> circuit_open

While a circuit is open, calls fail with ``CircuitOpenError`` without running
the wrapped operation. Caller errors (``NotFound``, ``InvalidTransition``,
``RuleValidationError``) pass through untouched and do not count as failures.

State lives in memory, which is authoritative for the running process, and is
written through to ``engine_health`` on failures and status changes so the
administrative surface and a restarted process can see it.

Usage:
    health = HealthMonitor(settings, pool=pool)
    rows = await health.call('store', lambda: fetch_rules(pool))
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from asyncpg import Pool

from evolution_engine.core.config import Settings
from evolution_engine.core.database import acquire, decode_json
from evolution_engine.core.errors import CallerError, CircuitOpenError, StoreError
from evolution_engine.models.enums import HealthStatus, OverallHealth
from evolution_engine.models.schemas import ComponentHealth, HealthSummary
from evolution_engine.sql import engine_queries


logger = logging.getLogger(__name__)

T = TypeVar('T')

# Stored error messages are truncated to this length
MAX_ERROR_LENGTH: int = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthMonitor:
    """
    Circuit breaker registry keyed by component name.

    Args:
        settings: Supplies the degraded/circuit thresholds and the cool-down.
        pool: Optional asyncpg pool for writing records through to
            ``engine_health``. Without it the monitor is purely in-memory.
        clock: Source of "now"; tests pass a controllable clock.
    """

    def __init__(
        self,
        settings: Settings,
        pool: Optional[Pool] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._degraded_threshold = settings.health_degraded_threshold
        self._circuit_threshold = settings.health_circuit_threshold
        self._cooldown = timedelta(seconds=settings.health_cooldown_seconds)
        self._pool = pool
        self._clock = clock
        self._records: Dict[str, ComponentHealth] = {}
        self._probes: Set[str] = set()

    # =========================================================================
    # Wrapped Calls
    # =========================================================================

    async def call(self, component: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` under the circuit breaker for ``component``.

        Args:
            component: Name of the dependency or job being protected.
            fn: Zero-argument coroutine function performing the operation.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            CircuitOpenError: The circuit is open, or a recovery probe is
                already in flight; ``fn`` is not invoked.
            Exception: Any exception from ``fn`` is re-raised after being
                recorded (caller errors are re-raised without recording).
        """
        record = self._record(component)
        probe = self._admit(record)
        previous = record.status

        try:
            result = await fn()
        except CallerError:
            raise
        except Exception as e:
            self._on_failure(record, e, probe)
            await self._persist(record)
            raise
        finally:
            if probe:
                # a cancelled or caller-faulted recovery call said nothing about the
                # dependency; the next call retries recovery
                self._probes.discard(component)

        self._on_success(record)
        if record.status != previous:
            await self._persist(record)
        return result

    def _admit(self, record: ComponentHealth) -> bool:
        """
        Decide whether a call may proceed. Returns True if it is the probe.

        No await happens between the check and the probe registration, so
        concurrent callers on the event loop can never admit two probes.
        """
        if record.status == HealthStatus.CIRCUIT_OPEN:
            opened_at = record.circuit_opened_at or self._clock()
            if self._clock() - opened_at < self._cooldown:
                raise CircuitOpenError(record.component)
            record.status = HealthStatus.RECOVERING
            logger.info("Component %s recovering, admitting probe", record.component)

        if record.status == HealthStatus.RECOVERING:
            if record.component in self._probes:
                raise CircuitOpenError(record.component)
            self._probes.add(record.component)
            return True

        return False

    def _on_failure(self, record: ComponentHealth, error: Exception, probe: bool) -> None:
        now = self._clock()
        self._probes.discard(record.component)

        record.error_count += 1
        record.last_error = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]
        record.last_error_at = now

        if probe or record.error_count >= self._circuit_threshold:
            if record.status != HealthStatus.CIRCUIT_OPEN:
                logger.warning(
                    "Circuit opened for %s after %d consecutive failures: %s",
                    record.component, record.error_count, record.last_error,
                )
            record.status = HealthStatus.CIRCUIT_OPEN
            record.circuit_opened_at = now
        elif record.error_count >= self._degraded_threshold:
            if record.status == HealthStatus.HEALTHY:
                logger.warning("Component %s degraded: %s", record.component, record.last_error)
            record.status = HealthStatus.DEGRADED

    def _on_success(self, record: ComponentHealth) -> None:
        self._probes.discard(record.component)
        if record.status != HealthStatus.HEALTHY:
            logger.info("Component %s healthy again", record.component)

        record.status = HealthStatus.HEALTHY
        record.error_count = 0
        record.success_count += 1
        record.last_success_at = self._clock()
        record.circuit_opened_at = None

    # =========================================================================
    # Inspection and Administration
    # =========================================================================

    def _record(self, component: str) -> ComponentHealth:
        record = self._records.get(component)
        if record is None:
            record = ComponentHealth(component=component)
            self._records[component] = record
        return record

    def get(self, component: str) -> ComponentHealth:
        """Copy of the current record (a fresh healthy one if never called)."""
        return self._record(component).model_copy()

    def is_open(self, component: str) -> bool:
        return self._record(component).status == HealthStatus.CIRCUIT_OPEN

    def snapshot(self) -> List[ComponentHealth]:
        return [self._records[name].model_copy() for name in sorted(self._records)]

    def summary(self) -> HealthSummary:
        """
        Roll every component up into one overall status.

        critical when any circuit is open, degraded when any component is
        degraded or recovering, healthy otherwise.
        """
        components = self.snapshot()
        open_circuits = [c.component for c in components if c.status == HealthStatus.CIRCUIT_OPEN]

        if open_circuits:
            overall = OverallHealth.CRITICAL
        elif any(c.status != HealthStatus.HEALTHY for c in components):
            overall = OverallHealth.DEGRADED
        else:
            overall = OverallHealth.HEALTHY

        return HealthSummary(overall=overall, components=components, open_circuits=open_circuits)

    async def reset(self, component: str) -> ComponentHealth:
        """Administrative reset: close the circuit and clear the counters."""
        self._probes.discard(component)
        record = ComponentHealth(component=component)
        self._records[component] = record
        logger.info("Component %s reset by operator", component)
        await self._persist(record)
        return record.model_copy()

    # =========================================================================
    # Persistence
    # =========================================================================

    async def load(self) -> int:
        """
        Restore records from ``engine_health``. Returns the number loaded.

        Called once at startup so an open circuit survives a restart.
        """
        if self._pool is None:
            return 0

        async with acquire(self._pool) as conn:
            rows = await conn.fetch(engine_queries.get_all_health_query())

        for row in rows:
            data = dict(row)
            data['metadata'] = decode_json(data.get('metadata'), {}) or {}
            record = ComponentHealth.model_validate(data)
            self._records[record.component] = record
        return len(rows)

    async def _persist(self, record: ComponentHealth) -> None:
        if self._pool is None:
            return
        try:
            async with acquire(self._pool) as conn:
                await conn.execute(
                    engine_queries.get_upsert_health_query(),
                    record.component,
                    record.status.value,
                    record.error_count,
                    record.success_count,
                    record.last_error,
                    record.last_success_at,
                    record.last_error_at,
                    record.circuit_opened_at,
                    record.metadata,
                )
        except StoreError as e:
            # the in-memory record stays authoritative
            logger.warning("Could not persist health for %s: %s", record.component, e)
