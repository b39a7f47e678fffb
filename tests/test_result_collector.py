"""
Unit Tests — Result Collector
=============================
Atomic publishing, exactly-once polling, malformed record handling and
suffix-anchored filename parsing.
"""
import os
import threading

import pytest

from isobuild.core.errors import PartialFileError
from isobuild.models.result_record import ResultRecord, TestDetail
from isobuild.services.result_collector import (
    ResultPoller,
    ResultPublisher,
    parse_record,
    render_output,
    sanitize_suite_id,
    serialize_record,
)


def _record(suite_id="0-build", exit_code=0, **kwargs):
    return ResultRecord(
        suite_id=suite_id,
        step_index=kwargs.pop("step_index", 0),
        container_id=kwargs.pop("container_id", "c0ffee"),
        test_status="passed" if exit_code == 0 else "failed",
        exit_code=exit_code,
        duration=kwargs.pop("duration", 1.25),
        **kwargs,
    )


@pytest.fixture
def shared_dir(tmp_path):
    d = tmp_path / "shared"
    d.mkdir()
    return str(d)


# ---------------------------------------------------------------------------
# 1. Record format
# ---------------------------------------------------------------------------
class TestRecordFormat:

    def test_multiline_output_survives(self):
        record = _record(stdout="line 1\nline 2\\n literal\n", stderr="warn=1\r\n")
        parsed = parse_record(serialize_record(record))
        assert parsed.stdout == record.stdout
        assert parsed.stderr == record.stderr
        assert parsed.exit_code == 0
        assert parsed.duration == 1.25

    def test_serialized_keys(self):
        text = serialize_record(_record(
            total_tests=3, passed_tests=2, failed_tests=1, skipped_tests=0,
            test_details=[TestDetail(name="a::b", status="passed")],
        ))
        lines = dict(line.split("=", 1) for line in text.splitlines())
        for key in ("suite_id", "step_index", "container_id", "test_status",
                    "exit_code", "duration", "stdout", "stderr", "total_tests",
                    "test_details_count", "test_details_0_name", "test_details_0_status"):
            assert key in lines
        assert lines["test_details_0_name"] == "a::b"

    def test_optional_counts_omitted_when_unknown(self):
        text = serialize_record(_record())
        assert "total_tests" not in text
        assert "test_details_count" not in text

    def test_missing_required_field(self):
        with pytest.raises(PartialFileError) as exc:
            parse_record("suite_id=x\nexit_code=0\n")
        assert set(exc.value.missing) == {"test_status", "duration"}

    def test_non_numeric_exit_code(self):
        with pytest.raises(PartialFileError, match="numeric"):
            parse_record("suite_id=x\ntest_status=passed\nexit_code=zero\nduration=1\n")

    def test_invalid_status(self):
        with pytest.raises(PartialFileError, match="invalid record"):
            parse_record("suite_id=x\ntest_status=maybe\nexit_code=0\nduration=1\n")

    def test_render_output_sections(self):
        text = render_output("hello\n", "oops\n")
        assert text == "=== STDOUT ===\nhello\n=== STDERR ===\noops\n"
        assert render_output("", "") == ""

    def test_sanitize_suite_id(self):
        assert sanitize_suite_id("a/b c") == "a-b-c"
        assert sanitize_suite_id("unit_tests") == "unit_tests"
        assert sanitize_suite_id("  ") == "suite"


# ---------------------------------------------------------------------------
# 2. Publishing
# ---------------------------------------------------------------------------
class TestPublisher:

    def test_publish_creates_result_and_output(self, shared_dir):
        publisher = ResultPublisher(shared_dir, "tst")
        published = publisher.publish(_record(stdout="out"))
        assert os.path.isfile(published.result_file)
        assert os.path.isfile(published.output_file)
        result_name = os.path.basename(published.result_file)
        output_name = os.path.basename(published.output_file)
        assert result_name.startswith("tst_result_0-build_")
        assert result_name.split("_result_", 1)[1] == output_name.split("_output_", 1)[1]

    def test_no_temp_files_left_behind(self, shared_dir):
        publisher = ResultPublisher(shared_dir, "tst")
        publisher.publish(_record())
        assert not [n for n in os.listdir(shared_dir) if n.startswith(".")]

    def test_cleanup_removes_only_own_files(self, shared_dir):
        foreign = os.path.join(shared_dir, "tst_result_other_1_ab")
        with open(foreign, "w") as f:
            f.write("x=1\n")
        publisher = ResultPublisher(shared_dir, "tst")
        publisher.publish(_record())
        publisher.publish(_record(suite_id="1-test"))
        assert publisher.cleanup() == 4
        assert publisher.cleanup() == 0
        assert os.listdir(shared_dir) == ["tst_result_other_1_ab"]

    def test_publish_to_missing_dir_creates_it(self, tmp_path):
        target = str(tmp_path / "new" / "dir")
        ResultPublisher(target, "tst").publish(_record())
        assert len(os.listdir(target)) == 2


# ---------------------------------------------------------------------------
# 3. Polling
# ---------------------------------------------------------------------------
class TestPoller:

    def test_no_results(self, shared_dir):
        result = ResultPoller(shared_dir, "tst").poll()
        assert result.results_found == 0
        assert result.status == "no_results"

    def test_missing_directory_is_no_results(self, tmp_path):
        assert ResultPoller(str(tmp_path / "absent"), "tst").poll().status == "no_results"

    def test_exactly_once(self, shared_dir):
        publisher = ResultPublisher(shared_dir, "tst")
        poller = ResultPoller(shared_dir, "tst")
        publisher.publish(_record())
        publisher.publish(_record(suite_id="1-lint", step_index=1, exit_code=1))

        first = poller.poll()
        assert first.results_found == 2
        assert first.status == "results_found"
        assert {r.suite_id for r in first.records} == {"0-build", "1-lint"}
        assert poller.poll().results_found == 0
        assert poller.poll().results_found == 0
        assert len(poller.processed) == 2

    def test_separate_pollers_each_see_result(self, shared_dir):
        ResultPublisher(shared_dir, "tst").publish(_record())
        assert ResultPoller(shared_dir, "tst").poll().results_found == 1
        assert ResultPoller(shared_dir, "tst").poll().results_found == 1

    def test_malformed_file_skipped_without_aborting(self, shared_dir):
        with open(os.path.join(shared_dir, "tst_result_bad_1_aa"), "w") as f:
            f.write("suite_id=bad\n")
        ResultPublisher(shared_dir, "tst").publish(_record())
        poller = ResultPoller(shared_dir, "tst")
        result = poller.poll()
        assert result.results_found == 1
        assert result.skipped == ["tst_result_bad_1_aa"]
        assert poller.poll().skipped == []

    def test_undecodable_file_skipped(self, shared_dir):
        with open(os.path.join(shared_dir, "tst_result_bin_1_ab"), "wb") as f:
            f.write(b"suite_id=\xff\xfe\ntest_status=passed\nexit_code=0\nduration=1\n")
        ResultPublisher(shared_dir, "tst").publish(_record())
        poller = ResultPoller(shared_dir, "tst")

        result = poller.poll()

        assert result.results_found == 1
        assert result.skipped == ["tst_result_bin_1_ab"]
        assert "tst_result_bin_1_ab" in poller.processed
        assert poller.poll().skipped == []

    def test_empty_file_retried_later(self, shared_dir):
        path = os.path.join(shared_dir, "tst_result_late_1_aa")
        open(path, "w").close()
        poller = ResultPoller(shared_dir, "tst")
        assert poller.poll().results_found == 0
        with open(path, "w") as f:
            f.write(serialize_record(_record(suite_id="late")))
        assert poller.poll().records[0].suite_id == "late"

    def test_foreign_files_ignored(self, shared_dir):
        for name in ("other_result_x_1_aa", "tst_output_x_1_aa", "tst_result_x_notpid_aa", "random.txt"):
            with open(os.path.join(shared_dir, name), "w") as f:
                f.write("suite_id=x\n")
        assert ResultPoller(shared_dir, "tst").poll().results_found == 0

    @pytest.mark.parametrize("suite_id", [
        "unit_tests",
        "a_1_2",
        "integration_123_abc",
        "3-cargo_test_release",
    ])
    def test_suite_ids_with_separator(self, shared_dir, suite_id):
        publisher = ResultPublisher(shared_dir, "tst")
        published = publisher.publish(_record(suite_id=suite_id))
        poller = ResultPoller(shared_dir, "tst")

        suite, pid, _ = poller.parse_filename(os.path.basename(published.result_file))
        assert suite == suite_id
        assert pid == os.getpid()

        polled = poller.poll().results[0]
        assert polled.record.suite_id == suite_id
        assert polled.output_file == published.output_file

    def test_prefix_with_regex_characters(self, shared_dir):
        ResultPublisher(shared_dir, "a.b+").publish(_record())
        assert ResultPoller(shared_dir, "a.b+").poll().results_found == 1
        assert ResultPoller(shared_dir, "aXb+").poll().results_found == 0

    def test_concurrent_poller_never_sees_partial_records(self, shared_dir):
        publisher = ResultPublisher(shared_dir, "tst")
        poller = ResultPoller(shared_dir, "tst")
        big = "x" * 200_000
        seen = []
        done = threading.Event()

        def publish_many():
            for i in range(30):
                publisher.publish(_record(suite_id=f"{i}-s", step_index=i, stdout=big))
            done.set()

        thread = threading.Thread(target=publish_many)
        thread.start()
        while not done.is_set():
            result = poller.poll()
            assert result.skipped == []
            seen.extend(result.records)
        thread.join()
        seen.extend(poller.poll().records)

        assert len(seen) == 30
        assert all(r.stdout == big for r in seen)
