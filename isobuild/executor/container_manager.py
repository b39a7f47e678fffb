"""
Container Manager
=================
Launches, tracks, executes commands in, and removes the ephemeral Docker
containers that build steps run in.

BOUNDARY RULES (CRITICAL):
    - The manager ONLY runs containers and reports what happened.
    - It NEVER decides step status; that is the Parallel Executor's job.
    - It NEVER publishes result files; that is the Result Collector's job.
    - Docker failures are returned as structured errors, never raised.

DOCKER STRATEGY:
    - One detached container per build step, kept alive with ``sleep infinity``.
    - Project root bind-mounted READ-ONLY at /workspace.
    - A fresh host artifact dir bind-mounted READ-WRITE at /tmp/build-artifacts.
    - Commands run through ``exec`` so stdout / stderr / exit code are
      captured separately.
    - CPU quota / memory limit are applied only when positive.

CLEANUP:
    - Stop-then-remove, tolerant of containers that are already gone.
    - Idempotent: cleaning the same id twice is a no-op the second time.
    - Every successfully launched container is tracked in the run's
      ContainerRegistry until it is removed.
"""
import os
import re
import time
import shutil
import logging
import secrets
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Literal, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import Mount
from requests.exceptions import RequestException

from isobuild.core.config import (
    ARTIFACT_ROOT,
    CONTAINER_PREFIX,
    GRACEFUL_STOP_TIMEOUT,
)
from isobuild.core.constants import (
    ARTIFACT_MOUNT,
    CONTAINER_LABEL,
    CONTAINER_LABEL_VALUE,
    EXEC_PATH,
    PROJECT_MOUNT,
)
from isobuild.core.errors import CommandExecutionError, ContainerLaunchError

logger = logging.getLogger(__name__)

ContainerStatus = Literal["pending", "running", "stopped", "removed", "error"]


# ---------------------------------------------------------------------------
# Handles and results
# ---------------------------------------------------------------------------
@dataclass
class ContainerHandle:
    """
    Opaque reference to one launched (or failed) container.

    Fields
    ------
    container_id : str
        Docker container id ("" when the launch failed).
    step_id : str
        Owning BuildStep suite id.
    status : ContainerStatus
        pending → running → stopped → removed, or error.
    error : str | None
        Launch failure message.
    error_kind : str
        precondition | image_not_found | api_error | daemon_unreachable | ""
    """
    step_id: str = ""
    container_id: str = ""
    name: str = ""
    image: str = ""
    working_directory: str = PROJECT_MOUNT
    artifact_dir: str = ""
    status: ContainerStatus = "pending"
    error: Optional[str] = None
    error_kind: str = ""

    @property
    def short_id(self) -> str:
        return self.container_id[:12]

    @property
    def ok(self) -> bool:
        return self.status == "running" and bool(self.container_id)

    def raise_for_error(self) -> None:
        """Raise ContainerLaunchError if this handle describes a failed launch."""
        if self.status == "error":
            raise ContainerLaunchError(self.error or "container launch failed", self.error_kind or "launch_error")


@dataclass
class ExecutionResult:
    """
    Output of one command executed in a running container.

    exit_code == -1 with ``error`` set means the command never ran
    (precondition or infrastructure failure), not a command failure.
    """
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    container_id: str = ""
    error: Optional[str] = None

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def raise_for_exit(self) -> None:
        """Raise CommandExecutionError for an infrastructure failure or a non-zero exit."""
        if self.error:
            raise CommandExecutionError(self.error, self.exit_code, self.stdout, self.stderr)
        if self.exit_code != 0:
            raise CommandExecutionError(
                f"command exited with code {self.exit_code}", self.exit_code, self.stdout, self.stderr
            )


@dataclass
class CleanupSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    details: dict[str, bool] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough, it is returned as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
class ContainerRegistry:
    """
    Thread-safe set of container ids launched during one run.

    One registry per orchestrator run, shared by reference between the
    ContainerManager and the TerminationController.
    """

    def __init__(self) -> None:
        self._ids: list[str] = []
        self._lock = threading.Lock()

    def register(self, container_id: str) -> int:
        if not container_id:
            raise ValueError("container_id is required")
        with self._lock:
            if container_id not in self._ids:
                self._ids.append(container_id)
            return len(self._ids)

    def unregister(self, container_id: str) -> int:
        with self._lock:
            if container_id in self._ids:
                self._ids.remove(container_id)
            return len(self._ids)

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._ids)

    def __contains__(self, container_id: object) -> bool:
        with self._lock:
            return container_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


_NAME_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_.-]+")


def _container_name(prefix: str, step_id: str) -> str:
    base = _NAME_SANITIZE_RE.sub("-", step_id).strip("-.") or "build"
    return f"{prefix}-{base}-{os.getpid()}-{secrets.token_hex(3)}"


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class ContainerManager:
    """
    Owns every container of one run, from launch to removal.

    Usage:
        manager = ContainerManager(registry=ContainerRegistry())
        handle = manager.launch("rust:1.77-slim", "/repo", "/workspace", step_id="0-build")
        if handle.ok:
            try:
                result = manager.execute(handle, "cargo build")
            finally:
                manager.cleanup(handle.container_id)
    """

    def __init__(
        self,
        registry: Optional[ContainerRegistry] = None,
        client=None,
        artifact_root: str = ARTIFACT_ROOT,
        name_prefix: str = CONTAINER_PREFIX,
        stop_timeout: int = GRACEFUL_STOP_TIMEOUT,
    ) -> None:
        self.registry = registry if registry is not None else ContainerRegistry()
        self._client = client
        self._client_lock = threading.Lock()
        self.artifact_root = artifact_root
        self.name_prefix = name_prefix
        self.stop_timeout = stop_timeout
        self._handles: dict[str, ContainerHandle] = {}
        self._artifact_dirs: list[str] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Docker client
    # ------------------------------------------------------------------
    def _get_client(self):
        with self._client_lock:
            if self._client is None:
                self._client = docker.from_env()
            return self._client

    def _get_container(self, container_id: str):
        return self._get_client().containers.get(container_id)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------
    def launch(
        self,
        image: str,
        project_root: str,
        working_directory: str = PROJECT_MOUNT,
        name: Optional[str] = None,
        cpu_limit: Optional[float] = None,
        memory_limit_mb: Optional[int] = None,
        step_id: str = "",
        artifact_mount: str = ARTIFACT_MOUNT,
    ) -> ContainerHandle:
        """
        Start a detached container for one build step.

        Parameters
        ----------
        image : str
            Docker image (required).
        project_root : str
            Existing host directory mounted read-only at /workspace.
        working_directory : str
            Working directory inside the container.
        name : str | None
            Container name; generated from ``step_id`` when omitted.
        cpu_limit : float | None
            CPU quota in cores. None / 0 omits the quota.
        memory_limit_mb : int | None
            Memory limit in MB. None / 0 omits the limit.
        step_id : str
            Owning step id (used for naming and logging).
        artifact_mount : str
            Container path of the writable artifact directory.

        Returns
        -------
        ContainerHandle
            ``status="running"`` on success; otherwise ``status="error"``
            with ``error`` / ``error_kind`` set. Never raises for Docker or
            precondition failures.
        """
        handle = ContainerHandle(
            step_id=step_id,
            image=image or "",
            working_directory=working_directory or PROJECT_MOUNT,
            name=name or _container_name(self.name_prefix, step_id),
        )

        # ------------------------------------------------------------------
        # 1. Preconditions
        # ------------------------------------------------------------------
        if not image or not image.strip():
            return self._fail(handle, "docker image is required", "precondition")
        if not project_root or not os.path.isdir(project_root):
            return self._fail(
                handle, f"project root directory does not exist: {project_root}", "precondition"
            )

        # ------------------------------------------------------------------
        # 2. Artifact dir + container
        # ------------------------------------------------------------------
        artifact_dir = ""
        try:
            client = self._get_client()

            os.makedirs(self.artifact_root, exist_ok=True)
            artifact_dir = tempfile.mkdtemp(prefix=f"{self.name_prefix}-build-", dir=self.artifact_root)
            handle.artifact_dir = artifact_dir

            run_kwargs = {
                "image": image,
                "command": ["sleep", "infinity"],
                "detach": True,
                "name": handle.name,
                "working_dir": handle.working_directory,
                "labels": {CONTAINER_LABEL: CONTAINER_LABEL_VALUE, "isobuild.step": step_id},
                "mounts": [
                    Mount(target=PROJECT_MOUNT, source=os.path.realpath(project_root),
                          type="bind", read_only=True),
                    Mount(target=artifact_mount or ARTIFACT_MOUNT, source=artifact_dir, type="bind", read_only=False),
                ],
            }
            if cpu_limit and cpu_limit > 0:
                run_kwargs["nano_cpus"] = int(cpu_limit * 1_000_000_000)
            if memory_limit_mb and memory_limit_mb > 0:
                run_kwargs["mem_limit"] = f"{int(memory_limit_mb)}m"

            logger.info(
                "Starting container | image=%s | step=%s | cpus=%s | memory=%sMB",
                image, step_id, cpu_limit or "-", memory_limit_mb or "-",
            )
            container = client.containers.run(**run_kwargs)

        except ImageNotFound as e:
            return self._fail(handle, f"Docker image '{image}' not found: {e}", "image_not_found")
        except APIError as e:
            return self._fail(handle, f"Docker API error: {e}", "api_error")
        except DockerException as e:
            return self._fail(handle, f"Docker daemon unreachable: {e}", "daemon_unreachable")
        except OSError as e:
            return self._fail(handle, f"Could not create artifact directory: {e}", "precondition")

        handle.container_id = container.id
        handle.status = "running"
        with self._lock:
            self._handles[container.id] = handle
            self._artifact_dirs.append(artifact_dir)
        total = self.registry.register(container.id)
        logger.info("Container %s launched for %s (tracked=%d)", handle.short_id, step_id, total)
        return handle

    def _fail(self, handle: ContainerHandle, message: str, kind: str) -> ContainerHandle:
        handle.status = "error"
        handle.error = message
        handle.error_kind = kind
        if handle.artifact_dir:
            shutil.rmtree(handle.artifact_dir, ignore_errors=True)
            handle.artifact_dir = ""
        logger.error("Launch failed | step=%s | %s", handle.step_id, message)
        return handle

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------
    def execute(self, handle: Optional[ContainerHandle], command: str) -> ExecutionResult:
        """
        Run ``command`` in a running container and capture its outcome.

        Returns
        -------
        ExecutionResult
            Always returned. ``error`` is set (and ``exit_code`` is -1) when
            the handle is invalid, the command is empty, or the container is
            missing / not running. A non-zero ``exit_code`` without ``error``
            is an ordinary command failure.
        """
        result = ExecutionResult(container_id=handle.container_id if handle else "")

        if handle is None or not handle.container_id or handle.status != "running":
            result.error = "invalid container handle"
            logger.error("Execute rejected: %s", result.error)
            return result
        if not command or not command.strip():
            result.error = "command is required"
            logger.error("Execute rejected for %s: %s", handle.short_id, result.error)
            return result

        try:
            container = self._get_container(handle.container_id)
            container.reload()
            if container.status != "running":
                result.error = f"container is not running (status: {container.status})"
                logger.error("Execute rejected for %s: %s", handle.short_id, result.error)
                return result

            shell_cmd = f"export PATH={EXEC_PATH} && {command}"
            start = time.monotonic()
            exit_code, output = container.exec_run(
                ["sh", "-c", shell_cmd],
                demux=True,
                workdir=handle.working_directory,
            )
            result.duration = round(max(0.0, time.monotonic() - start), 3)

            stdout, stderr = output if output else (None, None)
            result.exit_code = exit_code if exit_code is not None else -1
            result.stdout = (stdout or b"").decode("utf-8", errors="replace")
            result.stderr = (stderr or b"").decode("utf-8", errors="replace")

        except NotFound:
            result.error = f"container not found: {handle.short_id}"
            logger.error(result.error)
        except APIError as e:
            result.error = f"Docker API error: {e}"
            logger.error(result.error)
        except DockerException as e:
            result.error = f"Docker daemon unreachable: {e}"
            logger.error(result.error)

        logger.info(
            "Execution complete | container=%s | exit=%d | time=%.2fs",
            handle.short_id, result.exit_code, result.duration,
        )
        return result

    # ------------------------------------------------------------------
    # Track
    # ------------------------------------------------------------------
    def track(self, container_id: str) -> str:
        """
        Live status of a container: running, exited, created, ... or
        ``not_found``. Returns ``error`` for an empty id and ``unknown`` when
        Docker cannot be queried.
        """
        if not container_id:
            return "error"
        try:
            return self._get_container(container_id).status
        except NotFound:
            return "not_found"
        except DockerException as e:
            logger.warning("Could not inspect container %s: %s", container_id[:12], e)
            return "unknown"

    def handle_for(self, container_id: str) -> Optional[ContainerHandle]:
        with self._lock:
            return self._handles.get(container_id)

    def _mark(self, container_id: str, status: ContainerStatus) -> None:
        with self._lock:
            handle = self._handles.get(container_id)
            if handle is not None:
                handle.status = status

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    def cleanup(self, container_id: str, stop_timeout: Optional[int] = None) -> bool:
        """
        Stop, then remove a container.

        Already-removed containers count as success, so calling this twice
        is harmless. Returns False only if Docker refused the removal.
        """
        if not container_id:
            return False
        timeout = self.stop_timeout if stop_timeout is None else stop_timeout

        try:
            container = self._get_container(container_id)
        except NotFound:
            logger.debug("Container %s not found (may already be cleaned up)", container_id[:12])
            self._forget(container_id)
            return True
        except (DockerException, RequestException) as e:
            logger.error("Cleanup of %s failed: %s", container_id[:12], e)
            return False

        try:
            container.stop(timeout=timeout)
            self._mark(container_id, "stopped")
        except NotFound:
            self._forget(container_id)
            return True
        except (APIError, RequestException) as e:
            logger.warning("Stop of %s failed, removing anyway: %s", container_id[:12], e)

        try:
            container.remove()
        except NotFound:
            pass
        except (APIError, RequestException) as e:
            logger.error("Failed to remove container %s: %s", container_id[:12], e)
            return False

        self._forget(container_id)
        logger.info("Container %s destroyed", container_id[:12])
        return True

    def force_remove(self, container_id: str) -> bool:
        """Remove a container immediately (SIGKILL + remove), without stopping first."""
        if not container_id:
            return False
        try:
            self._get_container(container_id).remove(force=True)
        except NotFound:
            pass
        except (DockerException, RequestException) as e:
            logger.error("Force removal of %s failed: %s", container_id[:12], e)
            return False
        self._forget(container_id)
        logger.info("Container %s force-removed", container_id[:12])
        return True

    def _forget(self, container_id: str) -> None:
        self._mark(container_id, "removed")
        self.registry.unregister(container_id)

    def cleanup_all(self, container_ids: Optional[list[str]] = None,
                    stop_timeout: Optional[int] = None) -> CleanupSummary:
        """
        Clean up many containers, never aborting on an individual failure.

        Defaults to every container tracked in the registry.
        """
        ids = self.registry.snapshot() if container_ids is None else container_ids
        summary = CleanupSummary()
        for container_id in ids:
            container_id = (container_id or "").strip()
            if not container_id:
                continue
            ok = self.cleanup(container_id, stop_timeout=stop_timeout)
            summary.total += 1
            summary.details[container_id] = ok
            if ok:
                summary.succeeded += 1
            else:
                summary.failed += 1

        if summary.total:
            logger.info(
                "Cleanup finished | total=%d | ok=%d | failed=%d",
                summary.total, summary.succeeded, summary.failed,
            )
        return summary

    def cleanup_completed(self) -> tuple[int, int]:
        """
        Remove tracked containers that are no longer running.

        Returns
        -------
        tuple[int, int]
            (cleaned, skipped). Running or uninspectable containers are skipped.
        """
        cleaned = skipped = 0
        for container_id in self.registry.snapshot():
            status = self.track(container_id)
            if status in ("running", "unknown"):
                skipped += 1
                continue
            if self.cleanup(container_id, stop_timeout=0):
                cleaned += 1
            else:
                skipped += 1
        return cleaned, skipped

    def cleanup_labelled(self) -> int:
        """Remove every container carrying the isobuild label, including leftovers of earlier runs."""
        try:
            containers = self._get_client().containers.list(
                all=True, filters={"label": f"{CONTAINER_LABEL}={CONTAINER_LABEL_VALUE}"},
            )
        except DockerException as e:
            logger.error("Could not list labelled containers: %s", e)
            return 0
        return sum(1 for c in containers if self.cleanup(c.id))

    def remove_artifact_dirs(self) -> int:
        """Delete the host artifact directories created by this manager."""
        with self._lock:
            dirs, self._artifact_dirs = self._artifact_dirs, []
        removed = 0
        for path in dirs:
            if os.path.isdir(path):
                shutil.rmtree(path, ignore_errors=True)
                removed += 1
        return removed
