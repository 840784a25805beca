# runner.py
from __future__ import annotations

import os
import re
import signal
import subprocess
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from .conditions import evaluate_condition
from .dag import DependencyGraph, build_dag, build_graph, topo_levels
from .errors import StepFailure
from .matrix import expand_all
from .model import (
    ExecutionState,
    InstanceRecord,
    Job,
    JobInstance,
    JobStatus,
    Outcome,
    Step,
    Workflow,
)
from .report import RunReport, build_report, job_status

_MATRIX_REF_RE = re.compile(r"\$\{\{\s*matrix\.([A-Za-z_][A-Za-z0-9_-]*)\s*\}\}")


# ----------------------------------------------------------------------
# Step execution boundary
# ----------------------------------------------------------------------

class StepRunner(Protocol):
    """
    Runs one step of one job instance.

    Returns Outcome.SUCCESS / Outcome.FAILURE (a bool is accepted too), or
    Outcome.CANCELLED if it stopped because `cancel` was set. Raising is
    treated as a failure of the step.
    """

    def run_step(self, instance: JobInstance, step: Step, cancel: threading.Event) -> Union[Outcome, bool]:
        ...


def render_matrix(text: str, matrix: Dict[str, object]) -> str:
    """Substitute ${{ matrix.<axis> }} references with the instance's values."""
    def sub(m: re.Match) -> str:
        value = matrix.get(m.group(1))
        return "" if value is None else str(value)
    return _MATRIX_REF_RE.sub(sub, text)


def matrix_env(matrix: Dict[str, object]) -> Dict[str, str]:
    return {
        "MATRIX_" + re.sub(r"[^A-Za-z0-9]", "_", axis).upper(): str(value)
        for axis, value in matrix.items()
    }


class ShellStepRunner:
    """
    Default StepRunner: runs `step.run` through the shell.

      - cwd: repo_root / step.cwd
      - env: os.environ + job.env + step.env + MATRIX_<AXIS>
      - step.timeout: the process is killed and the step fails
      - cancellation: the process is killed and the step is Cancelled

    `uses:` steps (checkout, toolchain setup, caches) are provided by the
    environment and succeed without running anything.
    """

    def __init__(
        self,
        repo_root: str | Path = ".",
        *,
        poll_interval: float = 0.1,
        output_limit: int = 4000,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.poll_interval = poll_interval
        self.output_limit = output_limit

    def run_step(self, instance: JobInstance, step: Step, cancel: threading.Event) -> Outcome:
        job = instance.job
        if step.uses and not step.run:
            return Outcome.SUCCESS

        matrix = instance.matrix_dict
        cmd = render_matrix(step.run, matrix)
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepFailure(job=job.name, step=step.name, cmd=cmd, exit_code=None,
                              reason=f"cwd not found: {cwd}")

        env = os.environ.copy()
        env.update(job.env or {})
        env.update(step.env or {})
        env.update(matrix_env(matrix))

        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            # own process group, so a kill reaches every child of the shell
            start_new_session=True,
        )
        deadline = time.monotonic() + step.timeout if step.timeout else None

        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel.is_set():
                    _kill_group(proc)
                    proc.communicate()
                    return Outcome.CANCELLED
                if deadline is not None and time.monotonic() >= deadline:
                    _kill_group(proc)
                    out, _ = proc.communicate()
                    raise StepFailure(job=job.name, step=step.name, cmd=cmd, exit_code=None,
                                      reason=f"timed out after {step.timeout}s",
                                      output=(out or "")[-self.output_limit:])

        if proc.returncode != 0:
            raise StepFailure(job=job.name, step=step.name, cmd=cmd, exit_code=proc.returncode,
                              output=(out or "")[-self.output_limit:])
        return Outcome.SUCCESS


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass  # already gone


# ----------------------------------------------------------------------
# Run listener (console output hooks)
# ----------------------------------------------------------------------

class RunListener:
    """No-op hooks. The console overrides these to print progress."""

    def job_skipped(self, name: str, reason: str) -> None:
        pass

    def job_finished(self, status: JobStatus) -> None:
        pass

    def instance_started(self, record: InstanceRecord) -> None:
        pass

    def instance_finished(self, record: InstanceRecord) -> None:
        pass

    def step_started(self, instance: JobInstance, step: Step) -> None:
        pass


def _as_outcome(value: Union[Outcome, bool]) -> Outcome:
    if isinstance(value, bool):
        return Outcome.SUCCESS if value else Outcome.FAILURE
    outcome = Outcome(value)
    if outcome is Outcome.SKIPPED:
        raise ValueError("a step runner cannot report 'skipped'")
    return outcome


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Runs the instances of a validated graph with bounded concurrency.

    The thread calling run() is the only writer of execution state: it
    dispatches ready instances, records completions, and fires each job's
    fan-in barrier. Worker threads only run steps and hand back an Outcome.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        runner: StepRunner,
        *,
        max_workers: int | None = None,
        gates: Sequence[str] = (),
        listener: RunListener | None = None,
        workflow_name: str = "workflow",
        poll_interval: float = 0.1,
    ):
        if max_workers is None:
            max_workers = os.cpu_count() or 1
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")

        self.graph = graph
        self.runner = runner
        self.max_workers = max_workers
        self.gates = list(gates) or graph.terminal_jobs()
        self.listener = listener or RunListener()
        self.workflow_name = workflow_name
        self.poll_interval = poll_interval

        instances = expand_all(graph.jobs.values())
        self.records: Dict[str, List[InstanceRecord]] = {
            name: [InstanceRecord(i) for i in instances[name]] for name in graph.jobs
        }
        self.statuses: Dict[str, JobStatus] = {}
        self.blocked_by: Dict[str, Dict[str, Outcome]] = {}
        self.interrupted = False

        self._unfinished: Dict[str, int] = {n: len(r) for n, r in self.records.items()}
        self._waiting_on: Dict[str, int] = {n: len(graph.needs[n]) for n in graph.jobs}
        self._ready: Deque[InstanceRecord] = deque()
        self._cancel = threading.Event()
        self._started = False

    # ---- public ----

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop dispatching; pending instances become Cancelled. Safe from any thread."""
        self._cancel.set()

    def run(self) -> RunReport:
        if self._started:
            raise RuntimeError("Scheduler.run() can only be called once")
        self._started = True
        started_at = _now()

        in_flight: Dict[Future, InstanceRecord] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            # Snapshot first: releasing a root can cascade skips and zero
            # the counters of jobs further down.
            roots = [n for n in self.graph.order if self._waiting_on[n] == 0]
            for name in roots:
                self._release(name)

            while True:
                if self._cancel.is_set():
                    self._cancel_ready()

                # schedule ready instances up to the concurrency limit
                while self._ready and len(in_flight) < self.max_workers:
                    record = self._ready.popleft()
                    record.mark_running()
                    self.listener.instance_started(record)
                    in_flight[pool.submit(self._execute, record.instance)] = record

                if not in_flight:
                    break

                try:
                    done, _ = wait(list(in_flight), timeout=self.poll_interval,
                                   return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.interrupted = True
                    self.cancel()
                    continue

                for fut in done:
                    record = in_flight.pop(fut)
                    outcome, detail = fut.result()
                    self._finish(record, outcome, detail)

        unfinished = [r.instance.key for rs in self.records.values() for r in rs if not r.terminal]
        if unfinished:
            raise RuntimeError(f"scheduler stopped with non-terminal instances: {unfinished}")

        return build_report(
            self.workflow_name,
            {name: self.statuses[name] for name in self.graph.jobs},
            needs=self.graph.needs,
            titles={name: job.title for name, job in self.graph.jobs.items()},
            gates=self.gates,
            blocked_by=self.blocked_by,
            started_at=started_at,
            finished_at=_now(),
            cancelled=self._cancel.is_set(),
        )

    # ---- worker side ----

    def _execute(self, instance: JobInstance) -> Tuple[Outcome, Optional[str]]:
        """Run the instance's steps in order. Never raises."""
        for step in instance.job.steps:
            if self._cancel.is_set():
                return Outcome.CANCELLED, f"cancelled before step '{step.name}'"
            self.listener.step_started(instance, step)
            try:
                outcome = _as_outcome(self.runner.run_step(instance, step, self._cancel))
                detail = None if outcome is Outcome.SUCCESS else f"step '{step.name}' {outcome.value}"
            except StepFailure as e:
                outcome, detail = Outcome.FAILURE, str(e)
                if e.output:
                    detail = f"{detail}\n{e.output}"
            except Exception as e:
                outcome, detail = Outcome.FAILURE, f"step '{step.name}' raised {type(e).__name__}: {e}"
            if outcome is not Outcome.SUCCESS:
                return outcome, detail
        return Outcome.SUCCESS, None

    # ---- dispatcher side ----

    def _finish(self, record: InstanceRecord, outcome: Outcome, detail: Optional[str]) -> None:
        record.conclude(outcome, detail)
        self.listener.instance_finished(record)
        self._instance_terminal(record.instance.job_name)

    def _instance_terminal(self, name: str) -> None:
        self._unfinished[name] -= 1
        if self._unfinished[name] == 0:
            self._job_terminal(name)

    def _job_terminal(self, name: str) -> None:
        """All instances of `name` are terminal: roll up and unblock dependents."""
        settled = deque([name])
        while settled:
            current = settled.popleft()
            status = job_status(current, self.records[current])
            self.statuses[current] = status
            self.listener.job_finished(status)

            for dependent in self._in_order(self.graph.dependents(current)):
                self._waiting_on[dependent] -= 1
                if self._waiting_on[dependent] == 0 and self._release(dependent, defer=True):
                    settled.append(dependent)

    def _release(self, name: str, defer: bool = False) -> bool:
        """
        Fan-in barrier satisfied for `name`: evaluate its condition once.

        Returns True if the job became terminal without running. With
        defer=False that roll-up happens here, otherwise the caller does it.
        """
        records = self.records[name]
        job = self.graph.jobs[name]

        if self._cancel.is_set():
            terminal_outcome, reason = Outcome.CANCELLED, "run cancelled"
        else:
            needs = {dep: self.statuses[dep].conclusion for dep in self.graph.needs[name]}
            try:
                run_it = evaluate_condition(job, needs)
            except Exception as e:
                run_it, terminal_outcome = False, Outcome.FAILURE
                reason = f"condition raised {type(e).__name__}: {e}"
            else:
                terminal_outcome, reason = Outcome.SKIPPED, "condition not met"

            if run_it:
                self._ready.extend(records)
                return False

            if terminal_outcome is Outcome.SKIPPED:
                blockers = self._root_causes(needs)
                if blockers:
                    self.blocked_by[name] = blockers
                    causes = ", ".join(f"{dep}: {c.value}" for dep, c in blockers.items())
                    reason = f"{reason} (blocked by {causes})"

        if terminal_outcome is Outcome.SKIPPED:
            self.listener.job_skipped(name, reason)
        for record in records:
            # never masked by continue-on-error
            record.conclude(terminal_outcome, reason, tolerate=False)
            self.listener.instance_finished(record)
        self._unfinished[name] = 0

        if not defer:
            self._job_terminal(name)
        return True

    def _root_causes(self, needs: Dict[str, Outcome]) -> Dict[str, Outcome]:
        """Non-success needs, traced through skipped jobs back to the jobs that caused the skip."""
        causes: Dict[str, Outcome] = {}
        for dep, conclusion in needs.items():
            if conclusion is Outcome.SUCCESS:
                continue
            if dep in self.blocked_by:
                causes.update(self.blocked_by[dep])
            else:
                causes[dep] = conclusion
        return causes

    def _cancel_ready(self) -> None:
        while self._ready:
            record = self._ready.popleft()
            record.conclude(Outcome.CANCELLED, "run cancelled")
            self.listener.instance_finished(record)
            self._instance_terminal(record.instance.job_name)

    def _in_order(self, names: Iterable[str]) -> List[str]:
        names = set(names)
        return [n for n in self.graph.order if n in names]


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def _unpack(workflow: Union[Workflow, Iterable[Job]]) -> Tuple[str, List[Job], List[str]]:
    if isinstance(workflow, Workflow):
        return workflow.name, list(workflow.jobs), list(workflow.gates)
    return "workflow", list(workflow), []


def prepare(
    workflow: Union[Workflow, Iterable[Job]],
    runner: StepRunner | None = None,
    *,
    max_workers: int | None = None,
    gates: Sequence[str] | None = None,
    listener: RunListener | None = None,
) -> Scheduler:
    """
    Validate and expand the workflow and return a Scheduler ready to run.

    Raises a WorkflowDefinitionError before anything runs if the workflow
    is invalid.
    """
    name, jobs, declared_gates = _unpack(workflow)
    gates = list(gates) if gates else declared_gates
    graph = build_graph(jobs, gates)
    return Scheduler(
        graph,
        runner or ShellStepRunner(),
        max_workers=max_workers,
        gates=gates,
        listener=listener,
        workflow_name=name,
    )


def run_workflow(
    workflow: Union[Workflow, Iterable[Job]],
    runner: StepRunner | None = None,
    *,
    max_workers: int | None = None,
    gates: Sequence[str] | None = None,
    listener: RunListener | None = None,
) -> RunReport:
    """Build, expand and run a workflow; return the run report."""
    return prepare(
        workflow, runner, max_workers=max_workers, gates=gates, listener=listener
    ).run()


def plan(workflow: Union[Workflow, Iterable[Job]]) -> List[List[JobInstance]]:
    """
    Stages of the workflow with their matrix instances, for dry runs.
    Jobs in one stage do not depend on each other.
    """
    _name, jobs, _gates = _unpack(workflow)
    graph = build_graph(jobs)
    instances = expand_all(graph.jobs.values())
    adj, indeg = build_dag(list(graph.jobs.values()))
    return [
        [inst for name in level for inst in instances[name]]
        for level in topo_levels(adj, indeg)
    ]


__all__ = [
    "ExecutionState",
    "RunListener",
    "Scheduler",
    "ShellStepRunner",
    "StepRunner",
    "matrix_env",
    "plan",
    "prepare",
    "render_matrix",
    "run_workflow",
]
