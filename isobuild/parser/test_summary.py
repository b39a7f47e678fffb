"""
Test Summary Parser
===================
Extracts optional test counts from a step's captured stdout so they can be
attached to its ResultRecord.

Recognised formats:
    - pytest   "=== 3 passed, 1 failed, 2 skipped in 0.12s ==="
    - cargo    "test result: ok. 4 passed; 0 failed; 1 ignored; ..."
               plus per-test "test module::name ... ok|FAILED|ignored"
    - TAP/bats "ok 1 name" / "not ok 2 name" / "ok 3 name # skip"

Contract:
    - Deterministic: same output → same summary.
    - Tolerant: unknown output yields None, never an exception.
    - Counts only; the meaning of the command's output is not judged here.
"""
import re
from dataclasses import dataclass, field
from typing import Optional

from isobuild.models.result_record import TestDetail


@dataclass
class TestSummary:
    __test__ = False  # not a pytest class

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[TestDetail] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------
_PYTEST_SUMMARY_RE = re.compile(r"^=+ (?P<body>.*\b(?:passed|failed|skipped|error|errors)\b.*) in [\d.]+s", re.MULTILINE)
_PYTEST_COUNT_RE = re.compile(r"(\d+) (passed|failed|skipped|errors?|xfailed|xpassed)")

_CARGO_RESULT_RE = re.compile(
    r"^test result: \w+\. (?P<passed>\d+) passed; (?P<failed>\d+) failed; (?P<ignored>\d+) ignored",
    re.MULTILINE,
)
_CARGO_TEST_RE = re.compile(r"^test (?P<name>\S+) \.\.\. (?P<status>ok|FAILED|ignored)\s*$", re.MULTILINE)

_TAP_PLAN_RE = re.compile(r"^1\.\.(\d+)\s*$", re.MULTILINE)
_TAP_LINE_RE = re.compile(r"^(?P<not>not )?ok \d+ (?P<name>.*?)(?P<skip>\s+# skip.*)?$", re.MULTILINE | re.IGNORECASE)

_CARGO_STATUS = {"ok": "passed", "FAILED": "failed", "ignored": "skipped"}


def _parse_pytest(output: str) -> Optional[TestSummary]:
    matches = list(_PYTEST_SUMMARY_RE.finditer(output))
    if not matches:
        return None
    summary = TestSummary()
    for count, kind in _PYTEST_COUNT_RE.findall(matches[-1].group("body")):
        n = int(count)
        if kind in ("passed", "xpassed"):
            summary.passed += n
        elif kind in ("failed", "error", "errors"):
            summary.failed += n
        else:
            summary.skipped += n
    summary.total = summary.passed + summary.failed + summary.skipped
    return summary


def _parse_cargo(output: str) -> Optional[TestSummary]:
    results = list(_CARGO_RESULT_RE.finditer(output))
    if not results:
        return None
    summary = TestSummary()
    # cargo prints one "test result" line per test binary
    for m in results:
        summary.passed += int(m.group("passed"))
        summary.failed += int(m.group("failed"))
        summary.skipped += int(m.group("ignored"))
    summary.total = summary.passed + summary.failed + summary.skipped
    summary.details = [
        TestDetail(name=m.group("name"), status=_CARGO_STATUS[m.group("status")])
        for m in _CARGO_TEST_RE.finditer(output)
    ]
    return summary


def _parse_tap(output: str) -> Optional[TestSummary]:
    plan = _TAP_PLAN_RE.search(output)
    lines = list(_TAP_LINE_RE.finditer(output))
    if not plan and not lines:
        return None
    summary = TestSummary()
    for m in lines:
        if m.group("skip"):
            status = "skipped"
            summary.skipped += 1
        elif m.group("not"):
            status = "failed"
            summary.failed += 1
        else:
            status = "passed"
            summary.passed += 1
        summary.details.append(TestDetail(name=m.group("name").strip(), status=status))
    summary.total = int(plan.group(1)) if plan else len(lines)
    return summary


def parse_test_summary(output: str) -> Optional[TestSummary]:
    """
    Extract test counts from captured command output.

    Parameters
    ----------
    output : str
        Captured stdout (stderr may be appended by the caller).

    Returns
    -------
    TestSummary | None
        Counts and per-test details, or None if no known format matched.
    """
    if not output:
        return None
    for parser in (_parse_cargo, _parse_pytest, _parse_tap):
        summary = parser(output)
        if summary is not None:
            return summary
    return None
