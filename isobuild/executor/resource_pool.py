"""
Resource Pool
=============
CPU-slot and memory-aware admission control for build-step containers.

Every container holds exactly the slots it acquired until its worker
releases them; the pool never hands out more than ``capacity`` slots.

INVARIANTS (CRITICAL):
    - available + in_use == capacity after every acquire / release.
    - available is never negative and never exceeds capacity.
    - Slots are returned on every execution path (success, failure,
      forced termination). A leaked slot deadlocks future admission.

CPU BUDGET:
    capacity = max(1, min(requested, cpu_cores)).
    A requested capacity of None / 0 means "all cores".

MEMORY BUDGET:
    per_container = total * (1 - headroom) / parallelism, floored to a
    minimum allocation (never zero or negative). Effective concurrency is
    min(cpu_limit, memory_limit) where memory_limit is the memory left after
    headroom divided by the per-container estimate.

Live memory figures come from psutil.
"""
import math
import os
import time
import logging
import threading
from dataclasses import dataclass
from typing import Optional

import psutil

from isobuild.core.config import (
    MEMORY_HEADROOM,
    MIN_CONTAINER_MEMORY_MB,
    POOL_POLL_INTERVAL,
)
from isobuild.core.constants import MB, FALLBACK_CPU_CORES, FALLBACK_MEMORY_MB, LOW_MEMORY_WARNING_MB
from isobuild.core.errors import ConfigurationError, ResourceExhaustion

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class PoolStatus:
    capacity: int
    available: int
    in_use: int
    status: str = "active"


@dataclass(frozen=True)
class AcquireResult:
    """
    Outcome of one ``acquire`` call.

    status is one of:
        success   — ``acquired`` slots now belong to the caller
        exhausted — not enough free slots (non-blocking, or n > capacity)
        timeout   — blocking wait gave up
        cancelled — the cancellation event was set while waiting
    """
    acquired: int
    requested: int
    available: int
    status: str

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class MemoryWaitResult:
    available: bool
    attempts: int
    waited_seconds: float
    available_mb: float = 0.0


@dataclass(frozen=True)
class MemoryBudget:
    """
    Per-container memory allocation.

    Fields
    ------
    total_mb : float
        Memory budget before headroom.
    headroom : float
        Fraction withheld from containers (0.0 <= headroom < 1.0).
    parallelism : int
        Number of containers sharing the budget.
    floor_mb : float
        Minimum allocation per container.
    per_container_mb : float
        Final allocation, never below ``floor_mb``.
    clamped : bool
        True if the raw allocation was raised to ``floor_mb``.
    """
    total_mb: float
    headroom: float
    parallelism: int
    floor_mb: float
    per_container_mb: float
    clamped: bool = False

    @property
    def available_after_headroom_mb(self) -> float:
        return self.total_mb * (1 - self.headroom)

    @property
    def low_memory(self) -> bool:
        return self.per_container_mb < LOW_MEMORY_WARNING_MB


# ---------------------------------------------------------------------------
# Host resources
# ---------------------------------------------------------------------------
def get_available_cpu_cores() -> int:
    """Return the number of CPU cores usable by this process (at least 1)."""
    try:
        cores = len(os.sched_getaffinity(0))
    except (AttributeError, OSError):
        cores = os.cpu_count() or FALLBACK_CPU_CORES
    return max(1, cores)


def get_available_memory_mb() -> float:
    """Live available memory (includes reclaimable cache) in MB."""
    try:
        return psutil.virtual_memory().available / MB
    except Exception as e:
        logger.warning("[POOL] Could not read available memory, assuming %d MB: %s", FALLBACK_MEMORY_MB, e)
        return float(FALLBACK_MEMORY_MB)


def get_total_memory_mb() -> float:
    """Total physical memory in MB."""
    try:
        return psutil.virtual_memory().total / MB
    except Exception as e:
        logger.warning("[POOL] Could not read total memory, assuming %d MB: %s", FALLBACK_MEMORY_MB, e)
        return float(FALLBACK_MEMORY_MB)


def memory_available(required_mb: float) -> bool:
    """True if the host currently has at least ``required_mb`` free."""
    return get_available_memory_mb() >= required_mb


def wait_for_memory(
    required_mb: float,
    timeout_sec: float,
    interval: float = POOL_POLL_INTERVAL,
    cancel_event: Optional[threading.Event] = None,
) -> MemoryWaitResult:
    """
    Poll live memory until ``required_mb`` is free, the timeout expires, or
    ``cancel_event`` is set.

    Returns
    -------
    MemoryWaitResult
        ``available`` plus the number of memory reads made and seconds waited.
    """
    start = time.monotonic()
    attempts = 0
    while True:
        attempts += 1
        free_mb = get_available_memory_mb()
        if free_mb >= required_mb:
            return MemoryWaitResult(True, attempts, round(time.monotonic() - start, 3), free_mb)

        elapsed = time.monotonic() - start
        if elapsed >= timeout_sec or (cancel_event is not None and cancel_event.is_set()):
            logger.warning(
                "[POOL] Memory wait gave up | required=%.0fMB free=%.0fMB attempts=%d",
                required_mb, free_mb, attempts,
            )
            return MemoryWaitResult(False, attempts, round(elapsed, 3), free_mb)

        delay = min(interval, max(0.0, timeout_sec - elapsed))
        if cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)


# ---------------------------------------------------------------------------
# Budget calculation
# ---------------------------------------------------------------------------
def validate_headroom(headroom: float) -> float:
    if not 0.0 <= headroom < 1.0:
        raise ConfigurationError(f"Invalid memory headroom: {headroom} (must be 0.0-0.99)")
    return headroom


def calculate_memory_per_container(
    total_mb: float,
    parallelism: int,
    headroom: float = MEMORY_HEADROOM,
    floor_mb: float = MIN_CONTAINER_MEMORY_MB,
) -> MemoryBudget:
    """
    Conservative allocation: ``total_mb * (1 - headroom) / parallelism``,
    raised to ``floor_mb`` when smaller.

    Raises
    ------
    ConfigurationError
        Non-positive total, non-positive parallelism, headroom outside [0, 1).
    """
    if total_mb <= 0:
        raise ConfigurationError(f"Invalid total memory: {total_mb}")
    if parallelism <= 0:
        raise ConfigurationError(f"Invalid parallel_jobs: {parallelism}")
    validate_headroom(headroom)
    floor_mb = max(1.0, floor_mb)

    raw = total_mb * (1 - headroom) / parallelism
    clamped = raw < floor_mb
    per_container = floor_mb if clamped else round(raw, 2)
    if clamped:
        logger.warning("[POOL] Memory per container limited to minimum: %.0fMB", floor_mb)

    budget = MemoryBudget(
        total_mb=total_mb,
        headroom=headroom,
        parallelism=parallelism,
        floor_mb=floor_mb,
        per_container_mb=per_container,
        clamped=clamped,
    )
    if budget.low_memory:
        logger.warning(
            "[POOL] Low memory per container (%.0fMB) may cause performance issues",
            budget.per_container_mb,
        )
    return budget


def get_max_concurrent_containers(explicit_limit: Optional[int] = None) -> tuple[int, bool]:
    """
    Maximum concurrent containers for this host.

    Returns
    -------
    tuple[int, bool]
        (limit, limited_by_cpu). ``limited_by_cpu`` is True when an explicit
        limit was reduced to the CPU core count.
    """
    cores = get_available_cpu_cores()
    if explicit_limit is None or explicit_limit <= 0:
        return cores, False
    if explicit_limit > cores:
        return cores, True
    return explicit_limit, False


def effective_concurrency(
    cpu_limit: int,
    per_container_mb: float,
    available_mb: Optional[float] = None,
    headroom: float = MEMORY_HEADROOM,
) -> int:
    """
    ``min(cpu_limit, memory_limit)``, never below 1.

    memory_limit = floor(available_mb * (1 - headroom) / per_container_mb).
    """
    validate_headroom(headroom)
    if available_mb is None:
        available_mb = get_available_memory_mb()
    if per_container_mb <= 0:
        return max(1, cpu_limit)
    memory_limit = math.floor(available_mb * (1 - headroom) / per_container_mb)
    limit = max(1, min(cpu_limit, memory_limit))
    if limit < cpu_limit:
        logger.info(
            "[POOL] Concurrency limited by memory | cpu_limit=%d memory_limit=%d",
            cpu_limit, memory_limit,
        )
    return limit


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------
class ResourcePool:
    """
    Thread-safe counter of container slots for one orchestrator run.

    Usage:
        pool = ResourcePool(capacity=4)
        result = pool.acquire(1, block=True, cancel_event=stop)
        if result.ok:
            try:
                ...
            finally:
                pool.release(1)
    """

    def __init__(
        self,
        capacity: Optional[int] = None,
        cpu_count: Optional[int] = None,
        poll_interval: float = POOL_POLL_INTERVAL,
    ) -> None:
        cores = max(1, cpu_count if cpu_count is not None else get_available_cpu_cores())
        if capacity is None or capacity <= 0:
            capacity = cores
        self._capacity = max(1, min(capacity, cores))
        self._available = self._capacity
        self._in_use = 0
        self._poll_interval = poll_interval
        self._cond = threading.Condition()
        logger.info("[POOL] Initialized | capacity=%d cores=%d", self._capacity, cores)

    @property
    def capacity(self) -> int:
        return self._capacity

    def _take(self, n: int) -> AcquireResult:
        self._available -= n
        self._in_use += n
        return AcquireResult(acquired=n, requested=n, available=self._available, status="success")

    def acquire(
        self,
        n: int = 1,
        block: bool = False,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AcquireResult:
        """
        Take ``n`` slots.

        Parameters
        ----------
        n : int
            Slots requested (>= 1).
        block : bool
            Wait for slots instead of returning ``exhausted``.
        timeout : float | None
            Max seconds to wait in blocking mode (None = no limit).
        cancel_event : threading.Event | None
            Aborts a blocking wait when set.
        """
        if n < 1:
            raise ValueError(f"acquire count must be >= 1, got {n}")

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            if self._available >= n:
                return self._take(n)

            if not block or n > self._capacity:
                logger.debug("[POOL] Exhausted | requested=%d available=%d", n, self._available)
                return AcquireResult(0, n, self._available, "exhausted")

            while self._available < n:
                if cancel_event is not None and cancel_event.is_set():
                    return AcquireResult(0, n, self._available, "cancelled")
                wait_for = self._poll_interval
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return AcquireResult(0, n, self._available, "timeout")
                    wait_for = min(wait_for, remaining)
                self._cond.wait(wait_for)

            return self._take(n)

    def acquire_or_raise(self, n: int = 1) -> AcquireResult:
        """Non-blocking acquire that raises ResourceExhaustion instead of returning it."""
        result = self.acquire(n, block=False)
        if not result.ok:
            raise ResourceExhaustion(requested=n, available=result.available)
        return result

    def release(self, n: int = 1) -> int:
        """
        Return ``n`` slots, clamped to the slots currently in use.

        Returns
        -------
        int
            Slots actually released.
        """
        if n < 1:
            raise ValueError(f"release count must be >= 1, got {n}")
        with self._cond:
            released = min(n, self._in_use)
            if released < n:
                logger.warning("[POOL] Release of %d clamped to %d in use", n, released)
            self._in_use -= released
            self._available = min(self._capacity, self._available + released)
            self._cond.notify_all()
            return released

    def status(self) -> PoolStatus:
        with self._cond:
            return PoolStatus(self._capacity, self._available, self._in_use)

    def is_available(self) -> bool:
        with self._cond:
            return self._available > 0

    def reset(self) -> None:
        """Return every slot (end-of-run cleanup)."""
        with self._cond:
            self._available = self._capacity
            self._in_use = 0
            self._cond.notify_all()
