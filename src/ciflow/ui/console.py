"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional

from ..model import Conclusion, InstanceRecord, JobInstance, JobStatus, Outcome, Step
from ..report import RunReport
from ..runner import RunListener


_CONCLUSION_LABELS = {
    Conclusion.SUCCESS: "SUCCESS",
    Conclusion.FAILURE: "FAILED",
    Conclusion.SKIPPED: "SKIPPED",
    Conclusion.CANCELLED: "CANCELLED",
}


class Console(RunListener):
    """Centralized console output formatting. Also the scheduler's listener."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, workflow: str, job_count: int, instance_count: int, workers: int) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Jobs: {job_count} ({instance_count} instance(s))",
            f"Workers: {workers}",
            "",
        )

    def print_not_triggered(self, workflow: str, event: str, on: List[str]) -> None:
        self._out(f"Workflow '{workflow}' is not triggered by '{event}' (on: {', '.join(on)})")

    def print_plan(self, stages: List[List[JobInstance]]) -> None:
        """Print the execution plan: stages of independent jobs and their instances."""
        self.print_header("PLAN")
        for idx, stage in enumerate(stages, start=1):
            self._out(f"Stage {idx}:")
            for inst in stage:
                flag = " (continue-on-error)" if inst.continue_on_error else ""
                self._out(f"  {inst.key}{flag}")

    # ---- scheduler hooks ----

    def instance_started(self, record: InstanceRecord) -> None:
        self._out(f"\nJOB STARTED: {record.instance.key}")

    def step_started(self, instance: JobInstance, step: Step) -> None:
        if step.uses:
            self._out(f"[{instance.key}] STEP: {step.name} (provided: {step.uses})")
        else:
            self._out(f"[{instance.key}] STEP: {step.name}")

    def instance_finished(self, record: InstanceRecord) -> None:
        key = record.instance.key
        outcome, conclusion = record.outcome, record.conclusion
        if outcome is Outcome.SKIPPED:
            return
        if outcome is Outcome.CANCELLED and record.started_at is None:
            self._out(f"JOB CANCELLED: {key}")
            return

        duration = f" in {record.duration:.1f}s" if record.duration is not None else ""
        if outcome is conclusion:
            self._out(f"[{key}] STATUS: {outcome.value}{duration}")
        else:
            self._out(
                f"[{key}] STATUS: {outcome.value}{duration} "
                f"(continue-on-error, concluded {conclusion.value})"
            )
        if outcome is Outcome.FAILURE and record.detail:
            self.print_failure(key, record.detail)

    def job_skipped(self, name: str, reason: str) -> None:
        self._out(f"\nJOB SKIPPED: {name} ({reason})")

    def job_finished(self, status: JobStatus) -> None:
        if len(status.instances) > 1:
            self.print_debug(f"{status.name}: {status.conclusion.value} over {len(status.instances)} instances")

    # ---- results ----

    def print_failure(self, name: str, reason: str) -> None:
        """Print a failure reason; the full text only in debug mode."""
        if self.debug:
            self._out(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            self._out(f"Error: {error_line}")

    def print_results(self, report: RunReport) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for name, job in report.jobs.items():
            lines.append(f"  {name}: {_CONCLUSION_LABELS[job.conclusion]}")
            if len(job.instances) > 1 or any(i.outcome is not i.conclusion for i in job.instances):
                for inst in job.instances:
                    mark = ""
                    if inst.outcome is not inst.conclusion:
                        mark = f" (outcome {inst.outcome.value}, tolerated)"
                    lines.append(f"    {inst.key}: {inst.conclusion.value}{mark}")
        lines.append("-" * 40)
        gates = ", ".join(report.gates) or "(none)"
        lines.append(f"PIPELINE: {report.result.value.upper()} (gates: {gates})")
        if report.cancelled:
            lines.append("Run was cancelled")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
