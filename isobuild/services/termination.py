"""
Termination Controller
======================
Two-stage interrupt handling for one orchestrator run.

    NORMAL ──interrupt──► FIRST_SIGNAL ──interrupt──► FORCE_KILL

First interrupt:
    - sets the run's cancellation event (blocked acquires, memory waits and
      not-yet-started steps give up)
    - stops then removes every tracked container on a background thread
      with a bounded per-container timeout
    - returns immediately
Second interrupt:
    - force-removes every tracked container without waiting

``cleanup_on_exit`` runs from the atexit hook while the controller is
installed and removes whatever is left: containers and this run's published
temp files. It is idempotent. A run that finishes normally is cleaned up by
``Orchestrator.cleanup_on_completion`` instead; with KEEP_ARTIFACTS that
method leaves the temp files in place, and since ``uninstall`` drops the
atexit hook they are still there after the process exits.
"""
import atexit
import signal
import logging
import threading
from enum import Enum
from typing import Optional

from isobuild.core.config import GRACEFUL_STOP_TIMEOUT
from isobuild.executor.container_manager import ContainerManager
from isobuild.services.result_collector import ResultPublisher

logger = logging.getLogger(__name__)

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class TerminationState(str, Enum):
    NORMAL = "normal"
    FIRST_SIGNAL = "first_signal"
    FORCE_KILL = "force_kill"


class TerminationController:
    """
    Owns the cancellation event and the shutdown of one run's containers.

    The ContainerManager (and through it the ContainerRegistry) is shared by
    reference, so the controller always sees the live set of containers.
    """

    def __init__(
        self,
        manager: ContainerManager,
        publisher: Optional[ResultPublisher] = None,
        graceful_timeout: int = GRACEFUL_STOP_TIMEOUT,
    ) -> None:
        self.manager = manager
        self.publisher = publisher
        self.graceful_timeout = graceful_timeout
        self.cancel_event = threading.Event()
        self.state = TerminationState.NORMAL

        self._lock = threading.Lock()
        self._graceful_thread: Optional[threading.Thread] = None
        self._previous_handlers: dict[int, object] = {}
        self._installed = False
        self._exit_cleanup_done = False

    @property
    def interrupted(self) -> bool:
        return self.state != TerminationState.NORMAL

    # ------------------------------------------------------------------
    # Interrupts
    # ------------------------------------------------------------------
    def handle_interrupt(self, signum: Optional[int] = None, frame=None) -> dict:
        """
        Process one interrupt. Usable directly as a signal handler.

        Returns
        -------
        dict
            First call: ``graceful_termination="initiated"``,
            ``active_containers``, ``signal_received="first"``.
            Later calls: ``force_kill="triggered"``, ``removed``,
            ``signal_received="second"``.
        """
        with self._lock:
            first = self.state == TerminationState.NORMAL
            self.state = TerminationState.FIRST_SIGNAL if first else TerminationState.FORCE_KILL
            self.cancel_event.set()

        active = self.manager.registry.snapshot()
        name = signal.Signals(signum).name if signum else "interrupt"

        if first:
            logger.warning(
                "%s received: stopping %d container(s) gracefully (interrupt again to force)",
                name, len(active),
            )
            self._graceful_thread = threading.Thread(
                target=self._graceful_shutdown,
                args=(active,),
                name="isobuild-graceful-stop",
                daemon=True,
            )
            self._graceful_thread.start()
            return {
                "graceful_termination": "initiated",
                "active_containers": len(active),
                "signal_received": "first",
            }

        logger.warning("%s received again: force-killing %d container(s)", name, len(active))
        removed = sum(1 for cid in active if self.manager.force_remove(cid))
        return {
            "force_kill": "triggered",
            "removed": removed,
            "signal_received": "second",
        }

    def _graceful_shutdown(self, container_ids: list[str]) -> None:
        summary = self.manager.cleanup_all(container_ids, stop_timeout=self.graceful_timeout)
        logger.info(
            "Graceful termination finished | stopped=%d failed=%d",
            summary.succeeded, summary.failed,
        )

    def wait_for_graceful(self, timeout: Optional[float] = None) -> bool:
        """Block until the background graceful shutdown ends. True if it finished."""
        thread = self._graceful_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------
    def install(self) -> bool:
        """
        Register SIGINT / SIGTERM handlers and the atexit hook.

        Signal handlers can only be installed from the main thread; elsewhere
        (e.g. a run started by the HTTP API) only the atexit hook is added
        and interrupts are delivered by calling ``handle_interrupt``.
        """
        if self._installed:
            return True
        atexit.register(self.cleanup_on_exit)
        self._installed = True

        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; signal handlers not installed")
            return False

        for sig in _HANDLED_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self.handle_interrupt)
        return True

    def uninstall(self) -> None:
        """Restore the previous signal handlers and drop the atexit hook."""
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()
        if self._installed:
            atexit.unregister(self.cleanup_on_exit)
            self._installed = False

    # ------------------------------------------------------------------
    # Exit cleanup
    # ------------------------------------------------------------------
    def cleanup_on_exit(self) -> None:
        """Remove remaining containers and this run's temp files. Idempotent."""
        with self._lock:
            if self._exit_cleanup_done:
                return
            self._exit_cleanup_done = True

        remaining = self.manager.registry.snapshot()
        if remaining:
            if self.state == TerminationState.FORCE_KILL:
                for cid in remaining:
                    self.manager.force_remove(cid)
            else:
                self.manager.cleanup_all(remaining, stop_timeout=self.graceful_timeout)

        if self.publisher is not None:
            self.publisher.cleanup()
