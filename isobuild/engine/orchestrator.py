"""
Orchestrator
============
Drives one run of the execution engine:
Validate → Schedule → Budget → Execute → Cleanup → Report → Exit code.

Per-run objects (never shared between runs):
    - ContainerRegistry / ContainerManager
    - ResourcePool (capacity from CPU cores and the memory budget)
    - ResultPublisher / ResultPoller
    - TerminationController (owns the cancellation event)

Exit codes:
    0   every step succeeded
    1   at least one step failed or was aborted
    2   fatal orchestration error (invalid plan, dependency cycle, bad settings)
    130 interrupted

Configuration errors are detected before any pool slot is taken or any
container is launched.
"""
import time
import uuid
import asyncio
import logging
from typing import Iterable, Optional

from isobuild.core.config import (
    FILE_PREFIX,
    GRACEFUL_STOP_TIMEOUT,
    KEEP_ARTIFACTS,
    MAX_MEMORY_PER_CONTAINER_MB,
    MAX_PARALLEL,
    MEMORY_HEADROOM,
    MEMORY_WAIT_TIMEOUT,
    MIN_CONTAINER_MEMORY_MB,
    PLAN_PATH,
    REPORT_PATH,
    RESULT_POLL_INTERVAL,
    TEMP_DIR,
    TOTAL_MEMORY_LIMIT_MB,
)
from isobuild.core.constants import EXIT_FATAL, EXIT_INTERRUPTED, EXIT_STEPS_FAILED, EXIT_SUCCESS
from isobuild.core.errors import ConfigurationError
from isobuild.executor.container_manager import ContainerManager, ContainerRegistry
from isobuild.executor.parallel_executor import ParallelExecutor
from isobuild.executor.resource_pool import (
    MemoryBudget,
    ResourcePool,
    calculate_memory_per_container,
    effective_concurrency,
    get_available_memory_mb,
    get_max_concurrent_containers,
    get_total_memory_mb,
    validate_headroom,
)
from isobuild.executor.scheduler import build_execution_plan
from isobuild.models.build_step import BuildStep
from isobuild.models.run_report import RunReport, StepOutcome, StepState
from isobuild.parser.plan_reader import load_build_steps
from isobuild.services.report_writer import ReportWriter
from isobuild.services.result_collector import ResultPoller, ResultPublisher
from isobuild.services.termination import TerminationController

logger = logging.getLogger(__name__)


def compute_exit_code(outcomes: Iterable[StepOutcome], interrupted: bool = False) -> int:
    """Map step outcomes to the process exit code."""
    if interrupted:
        return EXIT_INTERRUPTED
    if any(o.status != StepState.SUCCEEDED for o in outcomes):
        return EXIT_STEPS_FAILED
    return EXIT_SUCCESS


class Orchestrator:
    """
    Runs a list of BuildSteps to completion and reports every step's outcome.

    All settings default to the environment configuration; tests override
    them by argument and inject a ContainerManager (or a Docker client).
    """

    def __init__(
        self,
        run_id: Optional[str] = None,
        manager: Optional[ContainerManager] = None,
        client=None,
        temp_dir: str = TEMP_DIR,
        file_prefix: str = FILE_PREFIX,
        max_parallel: int = MAX_PARALLEL,
        memory_headroom: float = MEMORY_HEADROOM,
        min_container_memory_mb: float = MIN_CONTAINER_MEMORY_MB,
        max_memory_per_container_mb: float = MAX_MEMORY_PER_CONTAINER_MB,
        total_memory_limit_mb: float = TOTAL_MEMORY_LIMIT_MB,
        memory_wait_timeout: float = MEMORY_WAIT_TIMEOUT,
        poll_interval: float = RESULT_POLL_INTERVAL,
        graceful_timeout: int = GRACEFUL_STOP_TIMEOUT,
        keep_artifacts: bool = KEEP_ARTIFACTS,
        report_path: Optional[str] = REPORT_PATH,
        plan_path: Optional[str] = PLAN_PATH,
        install_signal_handlers: bool = False,
    ) -> None:
        self.run_id = run_id or str(uuid.uuid4())[:12]
        self.manager = manager if manager is not None else ContainerManager(
            registry=ContainerRegistry(), client=client, stop_timeout=graceful_timeout,
        )
        self.publisher = ResultPublisher(temp_dir, file_prefix)
        self.poller = ResultPoller(temp_dir, file_prefix)
        self.termination = TerminationController(self.manager, self.publisher, graceful_timeout)
        self.pool: Optional[ResourcePool] = None
        self.executor: Optional[ParallelExecutor] = None
        self.budget: Optional[MemoryBudget] = None

        self.max_parallel = max_parallel
        self.memory_headroom = memory_headroom
        self.min_container_memory_mb = min_container_memory_mb
        self.max_memory_per_container_mb = max_memory_per_container_mb
        self.total_memory_limit_mb = total_memory_limit_mb
        self.memory_wait_timeout = memory_wait_timeout
        self.poll_interval = poll_interval
        self.graceful_timeout = graceful_timeout
        self.keep_artifacts = keep_artifacts
        self.report_path = report_path
        self.plan_path = plan_path
        self.install_signal_handlers = install_signal_handlers
        self.report = RunReport(run_id=self.run_id)

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------
    def resolve_capacity(self) -> tuple[int, float]:
        """
        Validate the memory options and size the pool.

        Returns
        -------
        tuple[int, float]
            (pool capacity, per-container memory in MB).

        Raises
        ------
        ConfigurationError
            Invalid headroom or negative memory options.
        """
        validate_headroom(self.memory_headroom)
        if self.max_memory_per_container_mb < 0:
            raise ConfigurationError(
                f"Invalid max_memory_per_container: {self.max_memory_per_container_mb}"
            )
        if self.total_memory_limit_mb < 0:
            raise ConfigurationError(f"Invalid total_memory_limit: {self.total_memory_limit_mb}")

        cpu_limit, limited_by_cpu = get_max_concurrent_containers(self.max_parallel)
        if limited_by_cpu:
            logger.warning(
                "[POOL] Requested parallelism %d reduced to %d CPU core(s)",
                self.max_parallel, cpu_limit,
            )

        total_mb = self.total_memory_limit_mb or get_total_memory_mb()
        self.budget = calculate_memory_per_container(
            total_mb, cpu_limit, self.memory_headroom, self.min_container_memory_mb,
        )
        per_container = self.max_memory_per_container_mb or self.budget.per_container_mb

        available_mb = get_available_memory_mb()
        if self.total_memory_limit_mb:
            available_mb = min(available_mb, self.total_memory_limit_mb)
        capacity = effective_concurrency(cpu_limit, per_container, available_mb, self.memory_headroom)

        logger.info(
            "[POOL] Budget | capacity=%d | memory/container=%.0fMB | headroom=%.0f%%",
            capacity, per_container, self.memory_headroom * 100,
        )
        return capacity, per_container

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def run(self, steps: Iterable[BuildStep]) -> RunReport:
        """Execute ``steps`` and return the finished RunReport."""
        report = self.report
        report.started_at = time.time()
        steps = list(steps)
        logger.info("Run %s: %d build step(s)", self.run_id, len(steps))

        # ===========================================================
        # 1. Validate + schedule (nothing acquired yet)
        # ===========================================================
        try:
            report.plan = build_execution_plan(steps)
            capacity, per_container = self.resolve_capacity()
        except ConfigurationError as e:
            logger.error("Run %s aborted: configuration error: %s", self.run_id, e)
            report.error = f"configuration error: {e}"
            report.steps = [StepOutcome(index=s.index, name=s.name) for s in steps]
            return self._finish(EXIT_FATAL)

        if self.plan_path:
            ReportWriter.write_plan(report.plan, self.plan_path)

        # ===========================================================
        # 2. Execute groups
        # ===========================================================
        self.pool = ResourcePool(capacity)
        self.executor = executor = ParallelExecutor(
            self.pool,
            self.manager,
            self.publisher,
            self.poller,
            cancel_event=self.termination.cancel_event,
            memory_per_container_mb=per_container,
            memory_wait_timeout=self.memory_wait_timeout,
            poll_interval=self.poll_interval,
        )
        if self.install_signal_handlers:
            self.termination.install()
        fatal = False
        try:
            report.steps = await executor.run(steps, report.plan)
        except Exception as e:
            logger.exception("Run %s aborted by an engine error", self.run_id)
            report.error = f"engine error: {e}"
            report.steps = self.step_states() or [StepOutcome(index=s.index, name=s.name) for s in steps]
            fatal = True
        finally:
            await asyncio.to_thread(self.cleanup_on_completion)
            if self.install_signal_handlers:
                self.termination.uninstall()

        # ===========================================================
        # 3. Report
        # ===========================================================
        report.interrupted = self.termination.interrupted
        if fatal:
            return self._finish(EXIT_FATAL)
        return self._finish(compute_exit_code(report.steps, report.interrupted))

    def _finish(self, exit_code: int) -> RunReport:
        report = self.report
        report.exit_code = exit_code
        report.success = exit_code == EXIT_SUCCESS
        report.finished_at = time.time()

        failed = len(report.failed_steps)
        logger.info(
            "Run %s finished | exit=%d | steps=%d | failed/aborted=%d | %.1fs",
            self.run_id, exit_code, len(report.steps), failed,
            report.finished_at - report.started_at,
        )
        if self.report_path:
            ReportWriter.write_report(report, self.report_path)
        return report

    def step_states(self) -> list[StepOutcome]:
        """Current per-step outcomes (live while the run executes)."""
        if self.executor is not None and not self.report.steps:
            return [self.executor.outcomes[i] for i in sorted(self.executor.outcomes)]
        return list(self.report.steps)

    def interrupt(self) -> dict:
        """Deliver an interrupt to this run (first graceful, then forced)."""
        return self.termination.handle_interrupt()

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    def cleanup_on_completion(self) -> dict:
        """
        Release everything the run holds: containers, pool slots, temp files
        and artifact directories (the last two are kept with keep_artifacts).
        """
        self.termination.wait_for_graceful(self.graceful_timeout * 2)
        containers = self.manager.cleanup_all()
        if self.pool is not None:
            self.pool.reset()

        temp_files = artifacts = 0
        if not self.keep_artifacts:
            temp_files = self.publisher.cleanup()
            artifacts = self.manager.remove_artifact_dirs()

        summary = {
            "containers_cleaned": containers.succeeded,
            "containers_failed": containers.failed,
            "temp_files_removed": temp_files,
            "artifact_dirs_removed": artifacts,
        }
        logger.info("Run %s cleanup | %s", self.run_id, summary)
        return summary


def run_plan_file(path: str, **kwargs) -> int:
    """
    Load a BuildStep list from ``path``, run it, and return the exit code.

    Signal handlers are installed so SIGINT / SIGTERM trigger the two-stage
    termination.
    """
    try:
        steps = load_build_steps(path)
    except ConfigurationError as e:
        logger.error("Invalid build plan %s: %s", path, e)
        return EXIT_FATAL

    kwargs.setdefault("install_signal_handlers", True)
    orchestrator = Orchestrator(**kwargs)
    report = asyncio.run(orchestrator.run(steps))
    return report.exit_code
