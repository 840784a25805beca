# report.py
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .model import Conclusion, InstanceRecord, JobStatus, MatrixValue, Outcome, PipelineResult


# ---------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------

def job_conclusion(records: Iterable[InstanceRecord]) -> Conclusion:
    """
    Fan-in over a job's instances.

    Success only if every instance concluded Success. A single Failure
    makes the job a Failure; Cancelled ranks below Failure. A job whose
    instances were all skipped (or that has none) is Skipped.
    """
    conclusions = [r.conclusion for r in records]
    if any(c is None for c in conclusions):
        raise ValueError("job_conclusion() needs every instance to be terminal")

    if not conclusions or all(c is Conclusion.SKIPPED for c in conclusions):
        return Conclusion.SKIPPED
    if any(c is Conclusion.FAILURE for c in conclusions):
        return Conclusion.FAILURE
    if any(c is Conclusion.CANCELLED for c in conclusions):
        return Conclusion.CANCELLED
    if all(c is Conclusion.SUCCESS for c in conclusions):
        return Conclusion.SUCCESS
    # success mixed with skipped: treat as not-success
    return Conclusion.FAILURE


def job_status(name: str, records: Sequence[InstanceRecord]) -> JobStatus:
    return JobStatus(name=name, conclusion=job_conclusion(records), instances=tuple(records))


def pipeline_result(statuses: Mapping[str, JobStatus], gates: Sequence[str]) -> PipelineResult:
    """
    Success iff every gate job concluded Success.

    An empty gate list is a Failure; callers pick the gates (the
    scheduler falls back to the terminal jobs when none are declared).
    """
    if not gates:
        return PipelineResult.FAILURE
    for gate in gates:
        status = statuses.get(gate)
        if status is None or status.conclusion is not Conclusion.SUCCESS:
            return PipelineResult.FAILURE
    return PipelineResult.SUCCESS


# ---------------------------------------------------------------------
# Structured run report
# ---------------------------------------------------------------------

class InstanceReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    matrix: Dict[str, MatrixValue] = Field(default_factory=dict)
    continue_on_error: bool = False
    outcome: Outcome
    conclusion: Conclusion
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration: Optional[float] = None
    detail: Optional[str] = None

    @classmethod
    def from_record(cls, record: InstanceRecord) -> InstanceReport:
        inst = record.instance
        return cls(
            key=inst.key,
            matrix=inst.matrix_dict,
            continue_on_error=inst.continue_on_error,
            outcome=record.outcome,
            conclusion=record.conclusion,
            started_at=record.started_at,
            finished_at=record.finished_at,
            duration=record.duration,
            detail=record.detail,
        )


class JobReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    needs: List[str] = Field(default_factory=list)
    conclusion: Conclusion
    # skipped jobs: the upstream jobs whose non-success caused the skip
    blocked_by: Dict[str, Conclusion] = Field(default_factory=dict)
    instances: List[InstanceReport] = Field(default_factory=list)


class RunReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflow: str
    result: PipelineResult
    gates: List[str]
    cancelled: bool = False
    started_at: datetime
    finished_at: datetime
    jobs: Dict[str, JobReport] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result is PipelineResult.SUCCESS

    def job(self, name: str) -> JobReport:
        return self.jobs[name]

    def instance(self, job: str, key: str) -> InstanceReport:
        for inst in self.jobs[job].instances:
            if inst.key == key:
                return inst
        raise KeyError(f"{job}: no instance {key!r}")

    def conclusions(self) -> Dict[str, str]:
        return {name: j.conclusion.value for name, j in self.jobs.items()}

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")

    def to_json(self, path: str | Path | None = None) -> str:
        text = json.dumps(self.to_dict(), indent=2)
        if path is not None:
            Path(path).write_text(text + "\n", encoding="utf-8")
        return text


def build_report(
    workflow: str,
    statuses: Mapping[str, JobStatus],
    needs: Mapping[str, Sequence[str]],
    titles: Mapping[str, str],
    gates: Sequence[str],
    started_at: datetime,
    finished_at: datetime,
    cancelled: bool = False,
    blocked_by: Optional[Mapping[str, Mapping[str, Conclusion]]] = None,
) -> RunReport:
    jobs = {
        name: JobReport(
            name=name,
            display_name=titles.get(name, name),
            needs=list(needs.get(name, ())),
            conclusion=status.conclusion,
            blocked_by=dict((blocked_by or {}).get(name, {})),
            instances=[InstanceReport.from_record(r) for r in status.instances],
        )
        for name, status in statuses.items()
    }
    return RunReport(
        workflow=workflow,
        result=pipeline_result(statuses, gates),
        gates=list(gates),
        cancelled=cancelled,
        started_at=started_at,
        finished_at=finished_at,
        jobs=jobs,
    )
