"""
Result Collector
================
Atomic publish-then-poll protocol for step outcomes.

Publishing (worker side):
    1. Write the captured stdout/stderr to a private dot-file in the shared
       temp dir, fsync, and rename it to
       ``<prefix>_output_<suite>_<pid>_<random>``.
    2. Write the ResultRecord the same way and rename it to
       ``<prefix>_result_<suite>_<pid>_<random>`` (same suffix).
    The rename is atomic on one filesystem, so a poller never sees a
    half-written record, and the output file always exists before its
    result file does.

Polling (orchestrator side):
    - Lists ``<prefix>_result_*`` files, skipping names already consumed.
    - Parses key=value fields; malformed records are skipped with a
      diagnostic and never abort the poll.
    - Each filename is processed at most once per run.

Filename parsing:
    Suite ids may contain ``_``. Names are matched by anchoring on the fixed
    trailing ``_<digits>_<hex>`` suffix, and the record body carries the
    authoritative ``suite_id``.
"""
import os
import re
import logging
import secrets
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Optional

from pydantic import ValidationError

from isobuild.core.config import FILE_PREFIX, TEMP_DIR
from isobuild.core.constants import OUTPUT_KIND, RESULT_KIND
from isobuild.core.errors import PartialFileError
from isobuild.models.result_record import ResultRecord, TestDetail
from isobuild.parser.flat_data import array_pairs, dump_flat, get_array, parse_flat

logger = logging.getLogger(__name__)

_REQUIRED_KEYS = ("suite_id", "test_status", "exit_code", "duration")
_OPTIONAL_INT_KEYS = ("step_index", "total_tests", "passed_tests", "failed_tests", "skipped_tests")
_SUITE_SANITIZE_RE = re.compile(r"[\s/\\]+")


# ---------------------------------------------------------------------------
# Record <-> text
# ---------------------------------------------------------------------------
def serialize_record(record: ResultRecord) -> str:
    """Render a ResultRecord as escaped flat key=value text."""
    pairs: list[tuple[str, object]] = [
        ("suite_id", record.suite_id),
        ("step_index", record.step_index),
        ("container_id", record.container_id),
        ("test_status", record.test_status),
        ("exit_code", record.exit_code),
        ("duration", f"{record.duration:.3f}"),
        ("stdout", record.stdout),
        ("stderr", record.stderr),
        ("total_tests", record.total_tests),
        ("passed_tests", record.passed_tests),
        ("failed_tests", record.failed_tests),
        ("skipped_tests", record.skipped_tests),
    ]
    if record.test_details:
        pairs.extend(array_pairs(
            "test_details",
            [{"name": d.name, "status": d.status} for d in record.test_details],
        ))
    return dump_flat(pairs, escape=True)


def parse_record(text: str, path: str = "<memory>") -> ResultRecord:
    """
    Parse escaped flat text into a ResultRecord.

    Raises
    ------
    PartialFileError
        Required keys missing, non-numeric numbers, or invalid status.
    """
    data = parse_flat(text, unescape=True)
    missing = [k for k in _REQUIRED_KEYS if k not in data]
    if missing:
        raise PartialFileError(path, f"missing required field(s): {', '.join(missing)}", missing)

    fields: dict = {
        "suite_id": data["suite_id"],
        "container_id": data.get("container_id", ""),
        "test_status": data["test_status"],
        "stdout": data.get("stdout", ""),
        "stderr": data.get("stderr", ""),
    }
    try:
        fields["exit_code"] = int(data["exit_code"])
        fields["duration"] = float(data["duration"])
        for key in _OPTIONAL_INT_KEYS:
            if data.get(key, "") != "":
                fields[key] = int(data[key])
    except ValueError as e:
        raise PartialFileError(path, f"invalid numeric field: {e}") from e

    fields["test_details"] = [
        TestDetail(name=item.get("name", ""), status=item.get("status", ""))
        for item in get_array(data, "test_details")
        if item
    ]
    try:
        return ResultRecord(**fields)
    except ValidationError as e:
        raise PartialFileError(path, f"invalid record: {e.errors()[0]['msg']}") from e


def render_output(stdout: str, stderr: str) -> str:
    """Human-readable companion file for a record."""
    parts: list[str] = []
    if stdout:
        parts.append("=== STDOUT ===\n" + stdout.rstrip("\n"))
    if stderr:
        parts.append("=== STDERR ===\n" + stderr.rstrip("\n"))
    return "\n".join(parts) + ("\n" if parts else "")


def sanitize_suite_id(suite_id: str) -> str:
    """Make a suite id safe to embed in a filename (separators, whitespace → '-')."""
    return _SUITE_SANITIZE_RE.sub("-", suite_id.strip()) or "suite"


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class PublishedResult:
    result_file: str
    output_file: str


class ResultPublisher:
    """
    Writes ResultRecords into the shared temp directory with write-then-rename.

    Remembers every path it published so ``cleanup`` removes exactly this
    run's files and nothing else.
    """

    def __init__(self, temp_dir: str = TEMP_DIR, prefix: str = FILE_PREFIX) -> None:
        self.temp_dir = temp_dir
        self.prefix = prefix
        self._published: list[str] = []
        self._lock = threading.Lock()

    def _final_name(self, kind: str, suite: str, suffix: str) -> str:
        return os.path.join(self.temp_dir, f"{self.prefix}_{kind}_{suite}_{suffix}")

    def _atomic_write(self, final_path: str, content: str) -> None:
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.prefix}-tmp-", dir=self.temp_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, final_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        with self._lock:
            self._published.append(final_path)

    def publish(self, record: ResultRecord) -> PublishedResult:
        """
        Atomically publish ``record`` and its output file.

        Raises
        ------
        OSError
            If the temp directory is not writable. Nothing partial is left
            behind under a final name.
        """
        os.makedirs(self.temp_dir, exist_ok=True)
        suite = sanitize_suite_id(record.suite_id)
        suffix = f"{os.getpid()}_{secrets.token_hex(4)}"

        output_file = self._final_name(OUTPUT_KIND, suite, suffix)
        result_file = self._final_name(RESULT_KIND, suite, suffix)

        # output first: a visible result file always has its output companion
        self._atomic_write(output_file, render_output(record.stdout, record.stderr))
        self._atomic_write(result_file, serialize_record(record))

        logger.debug("[POLL] Published %s", os.path.basename(result_file))
        return PublishedResult(result_file=result_file, output_file=output_file)

    @property
    def published_files(self) -> list[str]:
        with self._lock:
            return list(self._published)

    def cleanup(self) -> int:
        """Remove every file this publisher created. Idempotent."""
        with self._lock:
            paths, self._published = self._published, []
        removed = 0
        for path in paths:
            try:
                os.unlink(path)
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Could not remove temp file %s: %s", path, e)
        if removed:
            logger.info("Removed %d temp file(s)", removed)
        return removed


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------
class ProcessedFileSet:
    """Filenames already consumed by one poller (exactly-once processing)."""

    def __init__(self) -> None:
        self._names: set[str] = set()

    def add(self, name: str) -> bool:
        """Mark ``name`` processed; False if it already was."""
        if name in self._names:
            return False
        self._names.add(name)
        return True

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)


@dataclass
class PolledResult:
    record: ResultRecord
    result_file: str
    output_file: str
    pid: int


@dataclass
class PollResult:
    results_found: int = 0
    results: list[PolledResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "results_found" if self.results_found else "no_results"

    @property
    def records(self) -> list[ResultRecord]:
        return [r.record for r in self.results]


class ResultPoller:
    """
    Non-blocking reader of published ResultRecords.

    One poller per orchestrator run; its ProcessedFileSet is private.
    """

    def __init__(self, temp_dir: str = TEMP_DIR, prefix: str = FILE_PREFIX) -> None:
        self.temp_dir = temp_dir
        self.prefix = prefix
        self.processed = ProcessedFileSet()
        self._name_re = re.compile(
            rf"^{re.escape(prefix)}_{RESULT_KIND}_(?P<suite>.+)_(?P<pid>\d+)_(?P<rand>[0-9a-f]+)$"
        )

    def parse_filename(self, filename: str) -> Optional[tuple[str, int, str]]:
        """
        Split a result filename into (suite, pid, random).

        The suite part may itself contain ``_``; the match is anchored on
        the trailing ``_<pid>_<random>``. Returns None for foreign names.
        """
        m = self._name_re.match(filename)
        if not m:
            return None
        return m.group("suite"), int(m.group("pid")), m.group("rand")

    def poll(self) -> PollResult:
        """
        Collect every result file published since the previous poll.

        Returns
        -------
        PollResult
            ``results_found == 0`` (status "no_results") when nothing is
            pending; that is not an error.
        """
        outcome = PollResult()
        try:
            names = sorted(os.listdir(self.temp_dir))
        except FileNotFoundError:
            return outcome

        for name in names:
            if name in self.processed:
                continue
            parts = self.parse_filename(name)
            if parts is None:
                continue
            suite, pid, rand = parts
            path = os.path.join(self.temp_dir, name)

            try:
                if os.path.getsize(path) == 0:
                    # foreign writer mid-write; look again next poll
                    continue
                with open(path, "rb") as f:
                    raw = f.read()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("[POLL] Could not read %s: %s", name, e)
                continue

            self.processed.add(name)
            try:
                record = parse_record(raw.decode("utf-8"), path)
            except UnicodeDecodeError as e:
                logger.warning("[POLL] Skipping undecodable result file %s: %s", name, e)
                outcome.skipped.append(name)
                continue
            except PartialFileError as e:
                logger.warning("[POLL] Skipping malformed result file %s: %s", name, e.reason)
                outcome.skipped.append(name)
                continue

            output_file = os.path.join(
                self.temp_dir, f"{self.prefix}_{OUTPUT_KIND}_{suite}_{pid}_{rand}"
            )
            outcome.results.append(PolledResult(record, path, output_file, pid))
            outcome.results_found += 1

        if outcome.results_found:
            logger.debug("[POLL] %d new result(s)", outcome.results_found)
        return outcome
