from __future__ import annotations

import threading
import time
from typing import Dict, List, Tuple

import pytest

from ciflow.dsl import gate, job, sh
from ciflow.model import Outcome


class FakeRunner:
    """
    In-memory StepRunner.

    `results` maps an instance key ("job" or "job (v1, v2)"), or a
    (key, step name) pair, to an Outcome, a bool, or an exception to raise.
    Anything not listed succeeds.
    """

    def __init__(self, results=None, delay: float = 0.0):
        self.results = dict(results or {})
        self.delay = delay
        self.calls: List[Tuple[str, str]] = []
        self.events: List[Tuple[str, str]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run_step(self, instance, step, cancel):
        key = instance.key
        with self._lock:
            self.calls.append((key, step.name))
            self.events.append(("start", key))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            result = self.results.get((key, step.name), self.results.get(key, Outcome.SUCCESS))
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            with self._lock:
                self.active -= 1
                self.events.append(("end", key))

    def ran(self, key: str) -> bool:
        return any(k == key for k, _ in self.calls)

    def instance_keys(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for k, _ in self.calls:
            counts[k] = counts.get(k, 0) + 1
        return counts


@pytest.fixture
def fake_runner():
    return FakeRunner()


def ok(name: str, **kwargs):
    return job(name, sh(f"{name} step", "true"), **kwargs)


def gate_scenario_jobs():
    """check, test, lint, cargo-deny (advisories tolerated) -> ci-success."""
    return [
        ok("check"),
        ok("test", needs=["check"]),
        ok("lint", needs=["check"]),
        ok(
            "cargo-deny",
            needs=["check"],
            matrix={"checks": ["advisories", "licenses"]},
            continue_on_error="${{ matrix.checks == 'advisories' }}",
        ),
        gate("ci-success", "check", "test", "lint", "cargo-deny"),
    ]
