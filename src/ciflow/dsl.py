# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .model import ConditionSpec, ContinueOnErrorSpec, Job, Step, Workflow


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> Step:
    return Step(name=name, run=cmd, cwd=cwd, env=dict(env or {}), timeout=timeout)


def uses(action: str, name: str | None = None) -> Step:
    """A step provided by the environment (checkout, toolchain, caches)."""
    return Step(name=name or action, run="", uses=action)


def job(
    name: str,
    *steps: Step,  # allow job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # still allow job(..., steps_list=[...])
    needs: Optional[Sequence[str]] = None,
    matrix: Optional[Mapping[str, Iterable[Any]]] = None,
    if_: ConditionSpec = None,
    continue_on_error: ContinueOnErrorSpec = False,
    display_name: str | None = None,
    env: Optional[Dict[str, str]] = None,
    # convenience
    cwd: str | None = None,  # default cwd for steps
    timeout: float | None = None,  # default per-step timeout
) -> Job:
    if steps_list is None:
        steps_list = []
    steps_final = list(steps_list) + list(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]
    if timeout is not None:
        steps_final = [s if s.timeout is not None else replace(s, timeout=timeout) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        matrix={axis: tuple(values) for axis, values in (matrix or {}).items()},
        condition=if_,
        continue_on_error=continue_on_error,
        display_name=display_name,
        env={k: str(v) for k, v in (env or {}).items()},
    )


def gate(name: str, *needs: str, display_name: str | None = None) -> Job:
    """
    Fan-in job whose conclusion is the pipeline verdict.

    Runs (and trivially succeeds) only if every needed job concluded Success.
    """
    return job(
        name,
        sh("CI succeeded", "exit 0"),
        needs=list(needs),
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix: dict[str, tuple] = {}
        self._condition: ConditionSpec = None
        self._continue_on_error: ContinueOnErrorSpec = False
        self._display_name: str | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, timeout: float | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd, timeout=timeout))
        return self

    def use(self, action: str, name: str | None = None):
        self._steps.append(uses(action, name))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, axis: str, *values: Any):
        self._matrix[axis] = tuple(values)
        return self

    def when(self, condition: ConditionSpec):
        self._condition = condition
        return self

    def tolerate_failure(self, spec: ContinueOnErrorSpec = True):
        self._continue_on_error = spec
        return self

    def titled(self, display_name: str):
        self._display_name = display_name
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            matrix=dict(self._matrix),
            condition=self._condition,
            continue_on_error=self._continue_on_error,
            display_name=self._display_name,
            env=dict(self._env),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "workflow",
    gates: Optional[Sequence[str]] = None,
    on: Optional[Sequence[str]] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from ciflow import wf, job, sh, gate

        def workflow():
            return wf(
                job("check", sh("Check", "make check")),
                job("test", sh("Test", "make test"), needs=["check"]),
                gate("ci-success", "check", "test"),
                gates=["ci-success"],
            )

    Or use JOBS directly:
        JOBS = [job(...), job(...)]
    """
    return Workflow(name=name, jobs=list(jobs), gates=list(gates or []), on=list(on or []))


workflow = wf  # alias (avoid naming your function workflow if you use it)
