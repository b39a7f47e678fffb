"""
Parallel Executor
=================
Runs an ExecutionPlan group by group; steps inside a group run concurrently.

Per-step lifecycle (one worker thread per step):

    pending ─┬─ prerequisite failed/aborted ───────────────► aborted
             ├─ run cancelled before admission ────────────► aborted
             ├─ run cancelled after admission ─────────────► aborted
             └─ memory wait → pool slot → launch ─► running
                    running ─ run cancelled at launch ──────► aborted (container removed)
                    running ─ launch error ────────────────► failed
                    running ─ execute → publish record → cleanup
                    polled record exit_code == 0 ──────────► succeeded
                    polled record exit_code != 0 ──────────► failed
                    no record collected ───────────────────► failed

GUARANTEES:
    - The acquired pool slot is released in ``finally`` on every path,
      including when container cleanup itself fails.
    - Every launched container is cleaned up by the worker that launched it.
    - A group completes only when every step in it is terminal, so a step
      never launches before its prerequisites finished.
    - Step status comes from the polled ResultRecord, not from the worker's
      return value; workers and the orchestrator only meet at the temp dir.
"""
import asyncio
import logging
import threading
import time
from typing import Iterable, Optional

from isobuild.core.config import MEMORY_WAIT_TIMEOUT, RESULT_POLL_INTERVAL
from isobuild.core.errors import ContainerLaunchError
from isobuild.executor.container_manager import ContainerHandle, ContainerManager, create_log_excerpt
from isobuild.executor.resource_pool import ResourcePool, wait_for_memory
from isobuild.models.build_step import BuildStep
from isobuild.models.execution_plan import ExecutionGroup, ExecutionPlan
from isobuild.models.result_record import ResultRecord
from isobuild.models.run_report import StepOutcome, StepState
from isobuild.parser.test_summary import parse_test_summary
from isobuild.services.result_collector import ResultPoller, ResultPublisher

logger = logging.getLogger(__name__)


class ParallelExecutor:
    """
    Drives one run's steps through the pool, the container manager and the
    result collector.

    Usage:
        executor = ParallelExecutor(pool, manager, publisher, poller, cancel_event)
        outcomes = asyncio.run(executor.run(steps, plan))
    """

    def __init__(
        self,
        pool: ResourcePool,
        manager: ContainerManager,
        publisher: ResultPublisher,
        poller: ResultPoller,
        cancel_event: Optional[threading.Event] = None,
        memory_per_container_mb: float = 0.0,
        memory_wait_timeout: float = MEMORY_WAIT_TIMEOUT,
        poll_interval: float = RESULT_POLL_INTERVAL,
    ) -> None:
        self.pool = pool
        self.manager = manager
        self.publisher = publisher
        self.poller = poller
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.memory_per_container_mb = memory_per_container_mb
        self.memory_wait_timeout = memory_wait_timeout
        self.poll_interval = poll_interval
        self.outcomes: dict[int, StepOutcome] = {}

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def run(self, steps: Iterable[BuildStep], plan: ExecutionPlan) -> list[StepOutcome]:
        """
        Execute every group of ``plan`` in order.

        Returns
        -------
        list[StepOutcome]
            One terminal outcome per step, ordered by step index.
        """
        by_index = {step.index: step for step in steps}
        self.outcomes = {
            idx: StepOutcome(index=idx, name=step.name) for idx, step in by_index.items()
        }

        for group in plan.groups:
            await self._run_group(group, by_index)

        return [self.outcomes[idx] for idx in sorted(self.outcomes)]

    async def _run_group(self, group: ExecutionGroup, by_index: dict[int, BuildStep]) -> None:
        runnable: list[BuildStep] = []
        for idx in group.steps:
            step = by_index[idx]
            blocked = sorted(
                d for d in step.dependencies
                if self.outcomes[d].status != StepState.SUCCEEDED
            )
            if blocked:
                self._abort(idx, f"prerequisite step(s) did not succeed: {', '.join(map(str, blocked))}")
            elif self.cancel_event.is_set():
                self._abort(idx, "run cancelled")
            else:
                runnable.append(step)

        if not runnable:
            return

        logger.info(
            "[EXEC] Group %d | running %d step(s): %s",
            group.index, len(runnable), [s.index for s in runnable],
        )
        pending = {
            asyncio.create_task(asyncio.to_thread(self._run_step, step))
            for step in runnable
        }
        while pending:
            done, pending = await asyncio.wait(pending, timeout=self.poll_interval)
            for task in done:
                task.result()
            await asyncio.to_thread(self.collect_results)

        # records published by the last workers to finish
        await asyncio.to_thread(self.collect_results)

        for step in runnable:
            outcome = self.outcomes[step.index]
            if outcome.status.terminal:
                continue
            if self.cancel_event.is_set() and not outcome.container_id:
                self._abort(step.index, "run cancelled")
            else:
                outcome.status = StepState.FAILED
                outcome.error = outcome.error or "no result record collected"
                logger.error("[EXEC] Step %d (%s) failed: %s", step.index, step.name, outcome.error)

    def _abort(self, idx: int, reason: str) -> None:
        outcome = self.outcomes[idx]
        outcome.status = StepState.ABORTED
        outcome.error = reason
        logger.warning("[EXEC] Step %d (%s) aborted: %s", idx, outcome.name, reason)

    # ------------------------------------------------------------------
    # Result collection
    # ------------------------------------------------------------------
    def collect_results(self) -> int:
        """
        Poll the temp dir and apply every record belonging to this run.

        A record belongs to a step when its ``step_index`` and
        ``container_id`` match the step's launched container; anything else
        was published by another run sharing the directory and is ignored.
        """
        applied = 0
        for polled in self.poller.poll().results:
            record = polled.record
            outcome = self.outcomes.get(record.step_index)
            if (
                outcome is None
                or outcome.status.terminal
                or not record.container_id
                or record.container_id != outcome.container_id
            ):
                logger.debug("[POLL] Ignoring foreign record %s", polled.result_file)
                continue
            self._apply_record(outcome, record, polled.result_file)
            applied += 1
        return applied

    @staticmethod
    def _apply_record(outcome: StepOutcome, record: ResultRecord, result_file: str) -> None:
        outcome.exit_code = record.exit_code
        outcome.duration = record.duration
        outcome.result_file = result_file
        outcome.total_tests = record.total_tests
        outcome.passed_tests = record.passed_tests
        outcome.failed_tests = record.failed_tests
        outcome.skipped_tests = record.skipped_tests
        if record.passed:
            outcome.status = StepState.SUCCEEDED
            logger.info("[EXEC] Step %d (%s) succeeded in %.2fs", outcome.index, outcome.name, record.duration)
        else:
            outcome.status = StepState.FAILED
            logger.warning(
                "[EXEC] Step %d (%s) failed with exit code %d",
                outcome.index, outcome.name, record.exit_code,
            )

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def _memory_for(self, step: BuildStep) -> int:
        return step.memory_limit_mb or int(self.memory_per_container_mb)

    def _run_step(self, step: BuildStep) -> None:
        """Worker-thread body for one step. Never raises."""
        outcome = self.outcomes[step.index]
        required_mb = self._memory_for(step)

        if required_mb > 0:
            wait = wait_for_memory(
                required_mb, self.memory_wait_timeout, cancel_event=self.cancel_event,
            )
            if not wait.available and not self.cancel_event.is_set():
                logger.warning(
                    "[EXEC] Step %d starting without %dMB free (%.0fMB available after %.1fs)",
                    step.index, required_mb, wait.available_mb, wait.waited_seconds,
                )

        acquired = self.pool.acquire(1, block=True, cancel_event=self.cancel_event)
        if not acquired.ok:
            outcome.error = f"no pool slot acquired ({acquired.status})"
            logger.info("[EXEC] Step %d not started: %s", step.index, outcome.error)
            return
        if self.cancel_event.is_set():
            self.pool.release(1)
            outcome.error = "run cancelled"
            logger.info("[EXEC] Step %d not started: run cancelled after admission", step.index)
            return

        handle: Optional[ContainerHandle] = None
        try:
            outcome.status = StepState.RUNNING
            handle = self.manager.launch(
                step.image,
                step.project_root,
                step.working_directory,
                cpu_limit=step.cpu_limit,
                memory_limit_mb=required_mb,
                step_id=step.suite_id,
                artifact_mount=step.artifact_mount,
            )
            handle.raise_for_error()
            outcome.container_id = handle.container_id
            if self.cancel_event.is_set():
                # launched after the interrupt snapshot; never run the command
                outcome.status = StepState.ABORTED
                outcome.error = "run cancelled"
                logger.warning("[EXEC] Step %d (%s) aborted: run cancelled at launch", step.index, step.name)
                return

            started = time.monotonic()
            result = self.manager.execute(handle, step.command)
            if result.error or result.exit_code != 0:
                logger.info(
                    "[EXEC] Step %d (%s): exit=%d %s",
                    step.index, step.name, result.exit_code, result.error or "",
                )

            output = result.combined_output
            if result.error:
                output = "\n".join(p for p in (output, result.error) if p)
            outcome.log_excerpt = create_log_excerpt(output)

            summary = parse_test_summary(result.stdout)
            record = ResultRecord(
                suite_id=step.suite_id,
                step_index=step.index,
                container_id=handle.container_id,
                test_status="passed" if result.exit_code == 0 and not result.error else "failed",
                exit_code=result.exit_code,
                duration=result.duration or (time.monotonic() - started),
                stdout=result.stdout,
                stderr="\n".join(p for p in (result.stderr, result.error) if p),
                total_tests=summary.total if summary else None,
                passed_tests=summary.passed if summary else None,
                failed_tests=summary.failed if summary else None,
                skipped_tests=summary.skipped if summary else None,
                test_details=summary.details if summary else [],
            )
            self.publisher.publish(record)

        except ContainerLaunchError as e:
            outcome.status = StepState.FAILED
            outcome.error = f"{e.kind}: {e}"
        except OSError as e:
            outcome.error = f"could not publish result record: {e}"
            logger.error("[EXEC] Step %d (%s): %s", step.index, step.name, outcome.error)
        except Exception as e:
            # a worker crash fails its own step, never the run
            logger.exception("[EXEC] Step %d (%s) crashed", step.index, step.name)
            outcome.error = f"unexpected error: {e}"
        finally:
            try:
                if handle is not None and handle.container_id:
                    self.manager.cleanup(handle.container_id)
            except Exception:
                logger.exception("[EXEC] Step %d (%s): container cleanup failed", step.index, step.name)
            finally:
                self.pool.release(1)
