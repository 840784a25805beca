# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON run report
      - debugging without full tracebacks
    """
    kind: str
    job: str | None
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Definition errors: raised before anything is scheduled
# ----------------------------------------------------------------------

class WorkflowDefinitionError(CIError, ValueError):
    """The workflow cannot be turned into a runnable graph."""

    def __str__(self) -> str:
        return self.message


class DuplicateJobName(WorkflowDefinitionError):
    def __init__(self, names: Sequence[str]):
        self.names = sorted(names)
        super().__init__(
            kind="duplicate_job_name",
            job=None,
            step=None,
            message=f"Duplicate job names found: {self.names}",
            details={"names": self.names},
        )


class UnknownDependency(WorkflowDefinitionError):
    def __init__(self, job: str, dependency: str, known: Sequence[str]):
        self.dependency = dependency
        super().__init__(
            kind="unknown_dependency",
            job=job,
            step=None,
            message=(
                f"Job '{job}' needs missing job '{dependency}'. "
                f"Known jobs: {sorted(known)}"
            ),
            details={"dependency": dependency},
        )


class CycleDetected(WorkflowDefinitionError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(
            kind="cycle_detected",
            job=self.cycle[0] if self.cycle else None,
            step=None,
            message=f"Dependency cycle: {path}",
            details={"cycle": self.cycle},
        )


class InvalidCondition(WorkflowDefinitionError):
    def __init__(self, job: str, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(
            kind="invalid_condition",
            job=job,
            step=None,
            message=f"Job '{job}' has an invalid expression {expression!r}: {reason}",
            details={"expression": expression, "reason": reason},
        )


class InvalidMatrix(WorkflowDefinitionError):
    def __init__(self, job: str, reason: str):
        self.reason = reason
        super().__init__(
            kind="invalid_matrix",
            job=job,
            step=None,
            message=f"Job '{job}' has an invalid matrix: {reason}",
            details={"reason": reason},
        )


class UnknownGate(WorkflowDefinitionError):
    def __init__(self, gate: str, known: Sequence[str]):
        self.gate = gate
        super().__init__(
            kind="unknown_gate",
            job=gate,
            step=None,
            message=f"Gate job '{gate}' is not defined. Known jobs: {sorted(known)}",
            details={"gate": gate},
        )


# ----------------------------------------------------------------------
# Load errors
# ----------------------------------------------------------------------

class WorkflowLoadError(CIError):
    """The workflow file could not be read or has the wrong shape."""

    def __init__(self, path: str, message: str, details: dict | None = None):
        self.path = path
        super().__init__(
            kind="workflow_load_error",
            job=None,
            step=None,
            message=message,
            details=dict(details or {}, path=path),
        )


# ----------------------------------------------------------------------
# Execution errors
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int | None
    reason: str = ""
    output: str = ""  # tail of combined stdout/stderr

    def __str__(self) -> str:
        if self.exit_code is None:
            return f"[{self.job}] step '{self.step}' failed ({self.reason}): {self.cmd}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
