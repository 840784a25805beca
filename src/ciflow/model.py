# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union


class Outcome(str, Enum):
    """Raw result of running an instance's steps (or why it never ran)."""
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


# Same value set as Outcome. Kept as a separate name so call sites say
# which of the two they are looking at.
Conclusion = Outcome


class ExecutionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (ExecutionState.PENDING, ExecutionState.RUNNING)


class PipelineResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


MatrixValue = Union[str, int, float, bool]
Assignment = Tuple[Tuple[str, MatrixValue], ...]

# bool | "${{ expr }}" | callable(ConditionContext) -> bool
ConditionSpec = Union[bool, str, Callable[..., Any], None]
# bool | "${{ matrix.x == 'v' }}" | callable(dict) -> bool
ContinueOnErrorSpec = Union[bool, str, Callable[[Dict[str, MatrixValue]], Any]]


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    timeout: float | None = None  # seconds, enforced by the step runner
    # Reference to an externally provided action (checkout, toolchain setup,
    # caches). Opaque to the core; `run` is empty for such steps.
    uses: str | None = None


@dataclass
class Job:
    """
    A CI job: steps + dependencies + matrix + run policy.

    Canonical dependency field: `needs`
    Backwards-compatible alias: `dependency`
    """
    name: str
    steps: list[Step]

    needs: list[str] = field(default_factory=list)

    # axis -> ordered values; rightmost axis varies fastest on expansion
    matrix: Dict[str, Tuple[MatrixValue, ...]] = field(default_factory=dict)

    # None means the default `success()`
    condition: ConditionSpec = None
    continue_on_error: ContinueOnErrorSpec = False

    display_name: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    # ---- Backwards-compatible alias ----
    @property
    def dependency(self) -> list[str]:
        return self.needs

    @dependency.setter
    def dependency(self, value: list[str]) -> None:
        self.needs = value

    @property
    def title(self) -> str:
        return self.display_name or self.name


@dataclass(frozen=True)
class JobInstance:
    """
    One concrete unit of work: a job plus one matrix assignment.

    Identity is (job name, matrix assignment): two expansions of the same
    declaration compare equal, instances of different jobs never do.
    """
    job: Job = field(compare=False, hash=False, repr=False)
    matrix: Assignment = ()
    continue_on_error: bool = field(default=False, compare=False)
    index: int = field(default=0, compare=False)

    @property
    def job_name(self) -> str:
        return self.job.name

    @property
    def identity(self) -> Tuple[str, Assignment]:
        return (self.job.name, self.matrix)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JobInstance):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)

    @property
    def matrix_dict(self) -> Dict[str, MatrixValue]:
        return dict(self.matrix)

    @property
    def key(self) -> str:
        if not self.matrix:
            return self.job.name
        values = ", ".join(str(v) for _, v in self.matrix)
        return f"{self.job.name} ({values})"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InstanceRecord:
    """
    Execution state of one JobInstance.

    Owned by the scheduler. `outcome` and `conclusion` are write-once:
    once recorded they never change, and a second write is a bug.
    """

    def __init__(self, instance: JobInstance):
        self.instance = instance
        self.state = ExecutionState.PENDING
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.detail: Optional[str] = None
        self._outcome: Optional[Outcome] = None
        self._conclusion: Optional[Conclusion] = None

    def __repr__(self) -> str:
        return (
            f"InstanceRecord({self.instance.key!r}, state={self.state.value}, "
            f"outcome={self.outcome}, conclusion={self.conclusion})"
        )

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._outcome

    @property
    def conclusion(self) -> Optional[Conclusion]:
        return self._conclusion

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def mark_running(self) -> None:
        if self.state is not ExecutionState.PENDING:
            raise RuntimeError(f"{self.instance.key}: cannot start from state {self.state.value}")
        self.state = ExecutionState.RUNNING
        self.started_at = _now()

    def conclude(
        self,
        outcome: Outcome,
        detail: Optional[str] = None,
        tolerate: bool = True,
    ) -> Conclusion:
        """
        Record the raw outcome and derive the conclusion from it.

        With tolerate=False a Failure stays a Failure even under
        continue-on-error; engine errors are never masked.
        """
        if self._outcome is not None:
            raise RuntimeError(
                f"{self.instance.key}: outcome already recorded ({self._outcome.value})"
            )
        outcome = Outcome(outcome)
        conclusion = outcome
        if outcome is Outcome.FAILURE and tolerate and self.instance.continue_on_error:
            conclusion = Conclusion.SUCCESS

        self._outcome = outcome
        self._conclusion = conclusion
        self.state = ExecutionState(outcome.value)
        self.detail = detail
        self.finished_at = _now()
        return conclusion


@dataclass(frozen=True)
class JobStatus:
    """Fan-in of a job's instances."""
    name: str
    conclusion: Conclusion
    instances: Tuple[InstanceRecord, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.conclusion is Conclusion.SUCCESS


@dataclass
class Workflow:
    """A named set of jobs plus the gate jobs that decide the verdict."""
    name: str
    jobs: List[Job]
    gates: List[str] = field(default_factory=list)
    # Trigger events. Empty means "runs on anything".
    on: List[str] = field(default_factory=list)

    def triggered_by(self, event: Optional[str]) -> bool:
        if event is None or not self.on:
            return True
        return event in self.on
