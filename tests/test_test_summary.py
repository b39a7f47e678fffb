"""
Unit Tests — Test Summary Parser
"""
from isobuild.parser.test_summary import parse_test_summary


PYTEST_OUTPUT = """\
============================= test session starts ==============================
collected 6 items

tests/test_a.py ..F.s.                                                   [100%]

=========================== short test summary info ============================
FAILED tests/test_a.py::test_three - assert 1 == 2
=============== 1 failed, 4 passed, 1 skipped in 0.12s ===============
"""

CARGO_OUTPUT = """\
running 3 tests
test parser::tests::empty ... ok
test parser::tests::nested ... FAILED
test parser::tests::slow ... ignored

test result: FAILED. 1 passed; 1 failed; 1 ignored; 0 measured; 0 filtered out

running 2 tests
test it_works ... ok
test it_also_works ... ok

test result: ok. 2 passed; 0 failed; 0 ignored; 0 measured; 0 filtered out
"""

TAP_OUTPUT = """\
1..4
ok 1 builds the image
not ok 2 runs the binary
ok 3 optional feature # skip not enabled
ok 4 cleans up
"""


def test_pytest_summary():
    summary = parse_test_summary(PYTEST_OUTPUT)
    assert (summary.total, summary.passed, summary.failed, summary.skipped) == (6, 4, 1, 1)
    assert summary.details == []


def test_cargo_summary_sums_all_binaries():
    summary = parse_test_summary(CARGO_OUTPUT)
    assert (summary.total, summary.passed, summary.failed, summary.skipped) == (5, 3, 1, 1)
    statuses = {d.name: d.status for d in summary.details}
    assert statuses["parser::tests::nested"] == "failed"
    assert statuses["parser::tests::slow"] == "skipped"
    assert statuses["it_works"] == "passed"


def test_tap_summary():
    summary = parse_test_summary(TAP_OUTPUT)
    assert (summary.total, summary.passed, summary.failed, summary.skipped) == (4, 2, 1, 1)
    assert summary.details[2].name == "optional feature"
    assert summary.details[2].status == "skipped"


def test_unknown_output():
    assert parse_test_summary("Compiling foo v0.1.0\nFinished release\n") is None


def test_empty_output():
    assert parse_test_summary("") is None
