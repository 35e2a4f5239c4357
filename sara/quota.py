"""
Quota tracking for external services.

Each external service (the LLM provider, the transcript source) has a hard
ceiling of quota units per window. Two reset policies exist and are kept
deliberately separate:

- ``RollingWindow``: the window restarts a fixed duration after it began.
- ``FixedDailyUTC``: the window ends at a wall-clock time of day in UTC,
  independent of when usage began.

Callers check before spending and record the spend only after the external
call succeeded::

    await tracker.ensure_available("llm")      # raises QuotaExceededError
    article = await llm.complete(prompt)       # may raise; nothing spent
    await tracker.increment_counter("llm")

``check_limit`` followed by ``increment_counter`` is not atomic; concurrent
callers can both pass the check. ``reserve`` closes that gap by checking and
incrementing under one lock, with ``release`` to hand the units back if the
call then fails.

State is persisted as one JSON record::

    {"llm": {"used": 3, "windowStart": 1718000000000}, ...}
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from sara.errors import QuotaExceededError, StorageError, UnknownServiceError
from sara.storage import DurableStore
from sara.utils import MS_PER_HOUR, Clock, datetime_to_ms, ms_to_datetime, now_ms

logger = logging.getLogger(__name__)

LLM_SERVICE = "llm"
TRANSCRIPT_SERVICE = "transcript"


@dataclass(frozen=True)
class RollingWindow:
    """Reset ``duration_ms`` after the window started."""

    duration_ms: int

    def __post_init__(self):
        if self.duration_ms <= 0:
            raise ValueError("duration_ms must be positive")

    def next_reset(self, window_start: int) -> int:
        return window_start + self.duration_ms


@dataclass(frozen=True)
class FixedDailyUTC:
    """Reset at the first ``hour:minute`` UTC strictly after the window started."""

    hour: int = 0
    minute: int = 0

    def __post_init__(self):
        if not (0 <= self.hour <= 23 and 0 <= self.minute <= 59):
            raise ValueError(f"Invalid reset time {self.hour:02d}:{self.minute:02d}")

    def next_reset(self, window_start: int) -> int:
        started = ms_to_datetime(window_start)
        boundary = started.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if boundary <= started:
            boundary += timedelta(days=1)
        return datetime_to_ms(boundary)


ResetPolicy = Union[RollingWindow, FixedDailyUTC]


@dataclass(frozen=True)
class ServiceConfig:
    """Static quota configuration for one service."""

    ceiling: int
    reset_policy: ResetPolicy

    def __post_init__(self):
        if self.ceiling <= 0:
            raise ValueError("ceiling must be positive")


class QuotaState(BaseModel):
    """Units consumed in the current window of one service."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    used: int = Field(default=0, ge=0)
    window_start: int


class QuotaInfo(BaseModel):
    """Read-only snapshot of a service's quota."""

    service: str
    used: int
    remaining: int
    ceiling: int
    reset_time: datetime


class ReserveResult(BaseModel):
    """Outcome of an atomic check-and-increment."""

    allowed: bool
    used: int
    remaining: int


def default_services(
    llm_ceiling: int = 50,
    llm_window_hours: int = 24,
    transcript_ceiling: int = 100,
    transcript_reset_hour: int = 0,
    transcript_reset_minute: int = 0,
) -> dict[str, ServiceConfig]:
    """Build the standard LLM (rolling) and transcript (fixed UTC) configuration."""
    return {
        LLM_SERVICE: ServiceConfig(
            ceiling=llm_ceiling,
            reset_policy=RollingWindow(duration_ms=llm_window_hours * MS_PER_HOUR),
        ),
        TRANSCRIPT_SERVICE: ServiceConfig(
            ceiling=transcript_ceiling,
            reset_policy=FixedDailyUTC(hour=transcript_reset_hour, minute=transcript_reset_minute),
        ),
    }


class QuotaTracker:
    """
    Gatekeeper and accountant for per-service quotas.

    State is loaded from the durable store on first use and flushed after
    every mutation. A failed load is logged and treated as fresh quota; a
    failed flush from ``increment_counter``/``reserve``/``release`` raises
    ``StorageError`` after the in-memory state has been updated.
    """

    RECORD_KEY = "sara_rate_limits"

    def __init__(
        self,
        store: DurableStore,
        services: Mapping[str, ServiceConfig] | None = None,
        clock: Clock = now_ms,
    ):
        self._store = store
        self._services = dict(services) if services is not None else default_services()
        self._clock = clock
        self._states: dict[str, QuotaState] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def services(self) -> list[str]:
        return list(self._services)

    async def check_limit(self, service: str) -> bool:
        """Return True if the service has quota left. Never consumes quota."""
        async with self._lock:
            config = self._config(service)
            state = await self._current_state(service)
            return state.used < config.ceiling

    async def ensure_available(self, service: str) -> None:
        """Raise ``QuotaExceededError`` if ``check_limit`` would return False."""
        async with self._lock:
            config = self._config(service)
            state = await self._current_state(service)
            if state.used >= config.ceiling:
                reset_time = ms_to_datetime(self._next_reset(service, state))
                logger.warning(
                    "Quota exhausted for %s (%d/%d), resets at %s",
                    service, state.used, config.ceiling, reset_time.isoformat(),
                )
                raise QuotaExceededError(
                    service=service,
                    reset_time=reset_time,
                    remaining=max(config.ceiling - state.used, 0),
                    ceiling=config.ceiling,
                )

    async def increment_counter(self, service: str, cost: int = 1) -> None:
        """
        Record ``cost`` units spent. Call only after the external call succeeded.

        The count is not clamped to the ceiling; staying under it is the
        caller's job (see ``ensure_available`` and ``reserve``).
        """
        if cost < 0:
            raise ValueError("cost must not be negative")
        async with self._lock:
            self._config(service)
            state, _ = await self._state_for_update(service)
            state.used += cost
            logger.debug("Quota %s: +%d -> %d", service, cost, state.used)
            await self._save()

    async def reserve(self, service: str, cost: int = 1) -> ReserveResult:
        """Atomically spend ``cost`` units if, and only if, they fit under the ceiling."""
        if cost < 0:
            raise ValueError("cost must not be negative")
        async with self._lock:
            config = self._config(service)
            state, reset = await self._state_for_update(service)
            allowed = state.used + cost <= config.ceiling
            if allowed:
                state.used += cost
            if allowed or reset:
                await self._save()
            return ReserveResult(
                allowed=allowed,
                used=state.used,
                remaining=max(config.ceiling - state.used, 0),
            )

    async def release(self, service: str, cost: int = 1) -> None:
        """Return reserved units after a failed call. Never drops below zero."""
        if cost < 0:
            raise ValueError("cost must not be negative")
        async with self._lock:
            self._config(service)
            state, _ = await self._state_for_update(service)
            state.used = max(state.used - cost, 0)
            await self._save()

    async def get_quota_info(self, service: str) -> QuotaInfo:
        async with self._lock:
            config = self._config(service)
            state = await self._current_state(service)
            return QuotaInfo(
                service=service,
                used=state.used,
                remaining=max(config.ceiling - state.used, 0),
                ceiling=config.ceiling,
                reset_time=ms_to_datetime(self._next_reset(service, state)),
            )

    async def get_reset_time(self, service: str) -> datetime:
        """Next instant the service's window resets. Does not mutate state."""
        async with self._lock:
            self._config(service)
            await self._ensure_loaded()
            state = self._states.get(service)
            if state is None:
                state = QuotaState(used=0, window_start=self._clock())
            return ms_to_datetime(self._next_reset(service, state))

    def _config(self, service: str) -> ServiceConfig:
        try:
            return self._services[service]
        except KeyError:
            raise UnknownServiceError(service) from None

    def _next_reset(self, service: str, state: QuotaState) -> int:
        policy = self._services[service].reset_policy
        boundary = policy.next_reset(state.window_start)
        now = self._clock()
        if now >= boundary:
            # A reset is pending; the window it opens would start now
            boundary = policy.next_reset(now)
        return boundary

    async def _current_state(self, service: str) -> QuotaState:
        """State for read paths. A pending reset is persisted, and a failed write only logged."""
        state, reset = await self._state_for_update(service)
        if reset:
            try:
                await self._save()
            except StorageError:
                logger.warning("Could not persist quota reset for %s", service, exc_info=True)
        return state

    async def _state_for_update(self, service: str) -> tuple[QuotaState, bool]:
        """
        Load if needed, create the service's state, and apply any pending reset.

        Nothing is written here; the second item tells the caller whether a
        reset was applied in memory and still needs flushing.
        """
        await self._ensure_loaded()
        now = self._clock()
        state = self._states.get(service)
        if state is None:
            state = QuotaState(used=0, window_start=now)
            self._states[service] = state
            return state, False

        policy = self._services[service].reset_policy
        if now >= policy.next_reset(state.window_start):
            logger.info("Quota window reset for %s (%d units used)", service, state.used)
            state.used = 0
            state.window_start = now
            return state, True
        return state, False

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        try:
            raw = await self._store.read(self.RECORD_KEY)
            if raw is None:
                return
            parsed = json.loads(raw)
            self._states = {
                name: QuotaState.model_validate(value) for name, value in parsed.items()
            }
            logger.info("Loaded quota state for %d services", len(self._states))
        except (StorageError, ValueError, AttributeError) as e:
            # Fail open: a corrupt or unreadable record starts every service fresh
            logger.error(f"Failed to load quota state: {e}")
            self._states = {}

    async def _save(self) -> None:
        payload = {
            name: state.model_dump(by_alias=True) for name, state in self._states.items()
        }
        try:
            await self._store.write(self.RECORD_KEY, json.dumps(payload).encode("utf-8"))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Failed to serialise quota state: {e}", key=self.RECORD_KEY) from e
