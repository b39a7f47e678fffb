"""
Unit Tests — Termination Controller
===================================
Two-stage interrupt handling and exit cleanup.
"""
import os
import signal
import threading
import time

import pytest

from isobuild.models.result_record import ResultRecord
from isobuild.services.result_collector import ResultPublisher
from isobuild.services.termination import TerminationController, TerminationState


@pytest.fixture
def controller(manager):
    return TerminationController(manager, graceful_timeout=1)


# ---------------------------------------------------------------------------
# 1. Interrupts
# ---------------------------------------------------------------------------
class TestInterrupts:

    def test_first_interrupt_stops_and_removes(self, controller, manager, fake_docker, project_root):
        ids = [manager.launch("img", project_root).container_id for _ in range(2)]

        result = controller.handle_interrupt()

        assert result["graceful_termination"] == "initiated"
        assert result["active_containers"] == 2
        assert result["signal_received"] == "first"
        assert controller.cancel_event.is_set()
        assert controller.state == TerminationState.FIRST_SIGNAL

        assert controller.wait_for_graceful(timeout=5)
        assert sorted(fake_docker.stopped) == sorted(ids)
        assert sorted(cid for cid, _ in fake_docker.removed) == sorted(ids)
        assert len(manager.registry) == 0

    def test_second_interrupt_with_nothing_left_is_safe(self, controller, manager, project_root):
        manager.launch("img", project_root)
        manager.launch("img", project_root)
        controller.handle_interrupt()
        controller.wait_for_graceful(timeout=5)

        result = controller.handle_interrupt()

        assert result["force_kill"] == "triggered"
        assert result["removed"] == 0
        assert controller.state == TerminationState.FORCE_KILL

    def test_second_interrupt_force_removes(self, manager, fake_docker, project_root):
        controller = TerminationController(manager, graceful_timeout=1)
        handle = manager.launch("img", project_root)
        controller.state = TerminationState.FIRST_SIGNAL

        result = controller.handle_interrupt(signal.SIGINT)

        assert result["removed"] == 1
        assert fake_docker.removed == [(handle.container_id, True)]

    def test_interrupt_unblocks_running_command(self, controller, manager, fake_docker, project_root):
        fake_docker.script("long", delay=10)
        handle = manager.launch("img", project_root)
        outcome = {}
        worker = threading.Thread(target=lambda: outcome.update(r=manager.execute(handle, "long")))
        worker.start()
        deadline = time.monotonic() + 5
        while "long" not in fake_docker.commands_run() and time.monotonic() < deadline:
            time.sleep(0.01)

        controller.handle_interrupt()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert outcome["r"].exit_code == 137

    def test_no_containers(self, controller):
        result = controller.handle_interrupt()
        assert result["active_containers"] == 0
        assert controller.wait_for_graceful(timeout=1)


# ---------------------------------------------------------------------------
# 2. Installation
# ---------------------------------------------------------------------------
class TestInstall:

    def test_install_and_uninstall_restore_handlers(self, controller):
        before = signal.getsignal(signal.SIGTERM)
        assert controller.install()
        assert signal.getsignal(signal.SIGTERM) == controller.handle_interrupt
        controller.uninstall()
        assert signal.getsignal(signal.SIGTERM) == before

    def test_install_off_main_thread_skips_signals(self, controller):
        before = signal.getsignal(signal.SIGINT)
        results = []
        t = threading.Thread(target=lambda: results.append(controller.install()))
        t.start()
        t.join()
        assert results == [False]
        assert signal.getsignal(signal.SIGINT) == before
        controller.uninstall()


# ---------------------------------------------------------------------------
# 3. Exit cleanup
# ---------------------------------------------------------------------------
class TestExitCleanup:

    def test_cleanup_on_exit_removes_containers_and_files(self, manager, fake_docker, project_root, tmp_path):
        publisher = ResultPublisher(str(tmp_path / "shared"), "tst")
        published = publisher.publish(ResultRecord(suite_id="0-a", test_status="passed", exit_code=0))
        controller = TerminationController(manager, publisher, graceful_timeout=1)
        manager.launch("img", project_root)

        controller.cleanup_on_exit()

        assert len(manager.registry) == 0
        assert not os.path.exists(published.result_file)
        assert not os.path.exists(published.output_file)

    def test_cleanup_on_exit_is_idempotent(self, controller, manager, fake_docker, project_root):
        manager.launch("img", project_root)
        controller.cleanup_on_exit()
        removed = list(fake_docker.removed)
        controller.cleanup_on_exit()
        assert fake_docker.removed == removed
