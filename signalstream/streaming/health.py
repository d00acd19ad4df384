"""
Connection health tracking for the streaming session.

Decides whether and when to reconnect:
  - exponential backoff with jitter: min(base * 2^attempts + jitter, max)
  - circuit breaker: opens after N consecutive failures and stays open until
    ``reset_circuit()``; no automatic reconnect is invoked while open
  - 0-100 health score for status reporting
"""
import asyncio
import random
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from signalstream.domain.models import ConnectionHealth
from signalstream.exceptions import ConfigurationError
from signalstream.monitoring.logger import get_logger

logger = get_logger(__name__)

ReconnectFn = Callable[[], Awaitable[Any]]


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Reconnects allowed
    OPEN = "open"  # Manual intervention required


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionHealthTracker:
    """Backoff, circuit breaker and health score for one streaming session."""

    def __init__(
        self,
        base_delay_seconds: float = 5.0,
        max_delay_seconds: float = 300.0,
        jitter_seconds: float = 1.0,
        circuit_breaker_threshold: int = 10,
        stale_event_seconds: float = 300.0,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_seconds = jitter_seconds
        self.circuit_breaker_threshold = circuit_breaker_threshold
        self.stale_event_seconds = stale_event_seconds

        self._sleep = sleep
        self._rng = rng
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.reconnect_attempts = 0
        self.total_reconnects = 0
        self.last_successful_event: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._uptime_start: Optional[datetime] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, reconnect_config, **kwargs) -> "ConnectionHealthTracker":
        return cls(
            base_delay_seconds=reconnect_config.base_delay_seconds,
            max_delay_seconds=reconnect_config.max_delay_seconds,
            jitter_seconds=reconnect_config.jitter_seconds,
            circuit_breaker_threshold=reconnect_config.circuit_breaker_threshold,
            stale_event_seconds=reconnect_config.stale_event_seconds,
            **kwargs,
        )

    @property
    def is_circuit_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # -- reporting ------------------------------------------------------------

    def on_success(self) -> None:
        """Connection established: clear failure state and start the uptime clock."""
        now = self._clock()
        if self.state is CircuitState.OPEN:
            logger.info("CIRCUIT_CLOSED", reason="connection_success")
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.reconnect_attempts = 0
        self.last_error = None
        self.last_successful_event = now
        if self._uptime_start is None:
            self._uptime_start = now

    def on_failure(self, error: Optional[BaseException] = None) -> None:
        """Count a failure; open the circuit at the threshold."""
        self.consecutive_failures += 1
        self.last_error = str(error) if error is not None else None
        self._uptime_start = None

        if self.state is CircuitState.CLOSED and self.consecutive_failures >= self.circuit_breaker_threshold:
            self.state = CircuitState.OPEN
            logger.critical(
                "CIRCUIT_OPEN_MANUAL_INTERVENTION_REQUIRED",
                consecutive_failures=self.consecutive_failures,
                threshold=self.circuit_breaker_threshold,
                last_error=self.last_error,
            )
        else:
            logger.warning(
                "CONNECTION_FAILURE",
                consecutive_failures=self.consecutive_failures,
                threshold=self.circuit_breaker_threshold,
                error=self.last_error,
            )

    def on_event(self) -> None:
        """Record stream traffic; used to detect silently stale connections."""
        self.last_successful_event = self._clock()

    # -- reconnect scheduling -------------------------------------------------

    def calculate_delay(self) -> float:
        jitter = self._rng() * self.jitter_seconds
        delay = self.base_delay_seconds * (2 ** self.reconnect_attempts) + jitter
        return min(delay, self.max_delay_seconds)

    def schedule_reconnect(self, reconnect_fn: ReconnectFn) -> Optional[asyncio.Task]:
        """
        Invoke ``reconnect_fn`` after the backoff delay.

        Returns the background task, or None when the circuit is open. A
        failing ``reconnect_fn`` is reported via ``on_failure`` and
        rescheduled unless the circuit opened in the meantime.
        """
        if self.is_circuit_open:
            logger.warning("RECONNECT_SKIPPED_CIRCUIT_OPEN", consecutive_failures=self.consecutive_failures)
            return None
        if self.reconnect_pending:
            logger.debug("RECONNECT_ALREADY_SCHEDULED")
            return self._reconnect_task

        delay = self.calculate_delay()
        self.reconnect_attempts += 1
        self.total_reconnects += 1
        logger.info(
            "RECONNECT_SCHEDULED",
            delay_seconds=round(delay, 2),
            attempt=self.reconnect_attempts,
            total_reconnects=self.total_reconnects,
        )
        self._reconnect_task = asyncio.create_task(self._run_reconnect(reconnect_fn, delay))
        return self._reconnect_task

    async def _run_reconnect(self, reconnect_fn: ReconnectFn, delay: float) -> None:
        await self._sleep(delay)
        if self.is_circuit_open:
            logger.warning("RECONNECT_ABORTED_CIRCUIT_OPEN")
            return
        try:
            await reconnect_fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.on_failure(e)
            self._reconnect_task = None
            if isinstance(e, ConfigurationError):
                logger.error("RECONNECT_ABANDONED_CONFIGURATION_ERROR", error=str(e))
            elif not self.is_circuit_open:
                self.schedule_reconnect(reconnect_fn)
            return
        self.on_success()
        logger.info("RECONNECT_SUCCEEDED", total_reconnects=self.total_reconnects)

    def cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # -- state ---------------------------------------------------------------

    def get_health(self) -> ConnectionHealth:
        now = self._clock()
        stale = (
            self.last_successful_event is not None
            and (now - self.last_successful_event).total_seconds() > self.stale_event_seconds
        )
        if self.is_circuit_open:
            score = 0
        else:
            score = 100 - self.reconnect_attempts * 10 - self.consecutive_failures * 5 - (20 if stale else 0)
            score = max(0, min(100, score))
        uptime = (now - self._uptime_start).total_seconds() if self._uptime_start else 0.0
        return ConnectionHealth(
            score=score,
            consecutive_failures=self.consecutive_failures,
            reconnect_attempts=self.reconnect_attempts,
            total_reconnects=self.total_reconnects,
            last_successful_event=self.last_successful_event,
            uptime_seconds=uptime,
            is_circuit_open=self.is_circuit_open,
        )

    def is_stale(self) -> bool:
        if self.last_successful_event is None:
            return False
        return (self._clock() - self.last_successful_event).total_seconds() > self.stale_event_seconds

    def get_reconnection_strategy(self) -> Dict[str, Any]:
        """What the tracker would do next; for status output."""
        return {
            "should_reconnect": not self.is_circuit_open,
            "next_delay_seconds": None if self.is_circuit_open else round(
                min(self.base_delay_seconds * (2 ** self.reconnect_attempts), self.max_delay_seconds), 2
            ),
            "reason": "circuit_open" if self.is_circuit_open else "backoff",
            "reconnect_pending": self.reconnect_pending,
        }

    def reset_circuit(self) -> None:
        """Manual override: close the circuit and clear failure counters."""
        logger.info("CIRCUIT_RESET", consecutive_failures=self.consecutive_failures)
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.reconnect_attempts = 0
        self.last_error = None

    def reset(self) -> None:
        """Full reset on intentional stop."""
        self.cancel_reconnect()
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.reconnect_attempts = 0
        self.total_reconnects = 0
        self.last_successful_event = None
        self.last_error = None
        self._uptime_start = None
