# loader.py
"""
Workflow loading.

Two front ends produce the same `Workflow`:

  - Python files (`*_workflow.py`) defining `workflow()` or `JOBS`
  - YAML files shaped like a GitHub Actions workflow (`.ciflow.yml`)

Neither is a full implementation of its format: the YAML loader reads the
keys the engine understands and ignores runner placement (`runs-on`),
action inputs (`with`) and other keys that only matter to an executor.
"""
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import WorkflowLoadError
from .model import Job, Step, Workflow

Scalar = Union[bool, int, float, str]

PY_SUFFIXES = (".py",)
YAML_SUFFIXES = (".yml", ".yaml")


# ----------------------------------------------------------------------
# YAML schema
# ----------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class StepDoc(_Doc):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    working_directory: Optional[str] = Field(None, alias="working-directory")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)

    @model_validator(mode="after")
    def _run_or_uses(self) -> StepDoc:
        if bool(self.run) == bool(self.uses):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self

    def to_step(self, default_timeout: Optional[float]) -> Step:
        minutes = self.timeout_minutes or default_timeout
        return Step(
            name=self.name or self.run or self.uses,
            run=self.run or "",
            cwd=self.working_directory,
            env={k: str(v) for k, v in self.env.items()},
            timeout=minutes * 60 if minutes else None,
            uses=self.uses,
        )


class StrategyDoc(_Doc):
    matrix: Dict[str, List[Scalar]] = Field(default_factory=dict)

    @field_validator("matrix", mode="before")
    @classmethod
    def _no_include_exclude(cls, value: Any) -> Any:
        if isinstance(value, dict):
            for key in ("include", "exclude"):
                if key in value:
                    raise ValueError(f"matrix '{key}' is not supported")
        return value


class JobDoc(_Doc):
    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    if_: Optional[Union[bool, str]] = Field(None, alias="if")
    strategy: Optional[StrategyDoc] = None
    continue_on_error: Union[bool, str] = Field(False, alias="continue-on-error")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_as_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    def to_job(self, job_id: str) -> Job:
        return Job(
            name=job_id,
            steps=[s.to_step(self.timeout_minutes) for s in self.steps],
            needs=list(self.needs),
            matrix={k: tuple(v) for k, v in (self.strategy.matrix if self.strategy else {}).items()},
            condition=self.if_,
            continue_on_error=self.continue_on_error,
            display_name=self.name,
            env={k: str(v) for k, v in self.env.items()},
        )


class WorkflowDoc(_Doc):
    name: str = "workflow"
    on: List[str] = Field(default_factory=list)
    jobs: Dict[str, JobDoc]
    gates: List[str] = Field(default_factory=list, alias="x-gates")

    @field_validator("on", mode="before")
    @classmethod
    def _event_names(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, dict):
            return list(value)
        return value

    def to_workflow(self) -> Workflow:
        return Workflow(
            name=self.name,
            jobs=[doc.to_job(job_id) for job_id, doc in self.jobs.items()],
            gates=list(self.gates),
            on=list(self.on),
        )


def parse_yaml_workflow(text: str, source: str = "<string>") -> Workflow:
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise WorkflowLoadError(source, f"Invalid YAML: {e}") from e

    if not isinstance(raw, dict):
        raise WorkflowLoadError(source, "Workflow YAML must be a mapping with a 'jobs' key")

    # YAML 1.1 reads a bare `on:` key as the boolean True
    if True in raw and "on" not in raw:
        raw["on"] = raw.pop(True)

    try:
        doc = WorkflowDoc.model_validate(raw)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise WorkflowLoadError(
            source,
            f"Invalid workflow ({len(problems)} problem(s))",
            details={"problems": problems},
        ) from e
    return doc.to_workflow()


# ----------------------------------------------------------------------
# Python workflows
# ----------------------------------------------------------------------

def _coerce_python_workflow(value: Any, gates: Any, path: Path) -> Workflow:
    if isinstance(value, Workflow):
        return value
    if isinstance(value, list) and all(isinstance(j, Job) for j in value):
        return Workflow(name=path.stem, jobs=value, gates=list(gates or []))
    raise WorkflowLoadError(
        str(path),
        "Workflow must return/define a Workflow or a List[Job]. "
        "Define workflow() -> wf(...) or JOBS = [Job, ...].",
    )


def load_python_workflow(path: Path) -> Workflow:
    """
    Load a workflow from a python file.

    The file must define either:
      - workflow() -> Workflow | List[Job]
      - JOBS = [Job, ...]  (optionally GATES = ["job-name", ...])
    """
    module_name = f"ciflow_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
    except Exception as e:
        raise WorkflowLoadError(str(path), f"Error while executing workflow file: {e}") from e

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            value = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowLoadError(
                    str(path),
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from ciflow import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`",
                ) from e
            raise WorkflowLoadError(str(path), f"workflow() failed: {e}") from e
        except Exception as e:
            raise WorkflowLoadError(str(path), f"workflow() failed: {e}") from e
    elif "JOBS" in globals_dict:
        value = globals_dict["JOBS"]
    else:
        value = None

    return _coerce_python_workflow(value, globals_dict.get("GATES"), path)


def load_workflow(path: str | Path) -> Workflow:
    """Load a workflow from a .py or .yml/.yaml file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(str(wf_path), f"Workflow file not found: {wf_path}")

    if wf_path.suffix in PY_SUFFIXES:
        return load_python_workflow(wf_path)
    if wf_path.suffix in YAML_SUFFIXES:
        return parse_yaml_workflow(wf_path.read_text(encoding="utf-8"), source=str(wf_path))

    raise WorkflowLoadError(
        str(wf_path),
        f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}",
    )
