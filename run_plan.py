"""
Run a build plan file and exit with the engine's exit code.

Usage:
    python run_plan.py plan.yaml
    python run_plan.py plan.env

Exit codes: 0 success, 1 steps failed, 2 fatal error, 130 interrupted.
The computed plan is written as flat data to ISOBUILD_PLAN_PATH before any
step runs; the JSON report goes to ISOBUILD_REPORT_PATH.
"""
import sys
import logging

from isobuild.core.constants import EXIT_FATAL
from isobuild.engine.orchestrator import run_plan_file
from isobuild.utils.logging_config import setup_logging

logger = logging.getLogger("run_plan")


def main(argv: list[str]) -> int:
    if len(argv) != 2:
        sys.stderr.write("usage: run_plan.py <plan-file>\n")
        return EXIT_FATAL
    setup_logging()
    code = run_plan_file(argv[1])
    logger.info("Exiting with code %d", code)
    return code


def cli() -> None:
    sys.exit(main(sys.argv))


if __name__ == "__main__":
    cli()
