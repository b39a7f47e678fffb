"""
Report Writer
=============
Serializes a RunReport into the JSON run report and an ExecutionPlan into
the flat plan file.
"""
import json
import logging
import os
from typing import Any, Dict

from isobuild.models.execution_plan import ExecutionPlan
from isobuild.models.run_report import RunReport
from isobuild.parser.plan_reader import dump_plan

logger = logging.getLogger(__name__)


class ReportWriter:
    """
    Compiles one run's plan and per-step outcomes into a JSON file.
    """

    @staticmethod
    def build_report(report: RunReport) -> Dict[str, Any]:
        steps = [s.model_dump(mode="json") for s in report.steps]
        return {
            "run": {
                "id": report.run_id,
                "success": report.success,
                "interrupted": report.interrupted,
                "exit_code": report.exit_code,
                "error": report.error,
                "started_at": report.started_at,
                "finished_at": report.finished_at,
                "duration": round(max(0.0, report.finished_at - report.started_at), 3),
            },
            "plan": {
                "execution_order": report.plan.execution_order,
                "groups": [g.steps for g in report.plan.groups],
            },
            "steps": steps,
            "summary": {
                "total": len(steps),
                "succeeded": sum(1 for s in steps if s["status"] == "succeeded"),
                "failed": sum(1 for s in steps if s["status"] == "failed"),
                "aborted": sum(1 for s in steps if s["status"] == "aborted"),
            },
        }

    @staticmethod
    def write_report(report: RunReport, output_path: str) -> bool:
        """
        Write the run report; returns False (and logs) if the file cannot be written.
        """
        data = ReportWriter.build_report(report)
        abs_output = os.path.abspath(output_path)
        try:
            parent = os.path.dirname(abs_output)
            if parent:
                os.makedirs(parent, exist_ok=True)
            logger.info("Writing run report to %s", abs_output)
            with open(abs_output, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            return True
        except OSError as e:
            logger.error("Failed to write run report: %s", e, exc_info=True)
            return False

    @staticmethod
    def write_plan(plan: ExecutionPlan, output_path: str) -> bool:
        """
        Write the computed execution plan as flat key=value data.

        Written once scheduling succeeds, before any step runs, so a planner
        can read the groups while the run is in progress.
        """
        abs_output = os.path.abspath(output_path)
        try:
            parent = os.path.dirname(abs_output)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(abs_output, "w", encoding="utf-8") as f:
                f.write(dump_plan(plan))
            logger.info("Execution plan written to %s", abs_output)
            return True
        except OSError as e:
            logger.error("Failed to write execution plan: %s", e, exc_info=True)
            return False
