# ciflow_workflow.py
# Workflow for ciflow itself: tests across interpreters, lint, dependency
# audit, and a gate job that merge tooling can watch.
from __future__ import annotations

from ciflow import gate, job, sh, wf


def workflow():
    return wf(
        job(
            "check",
            sh("Install package", "python -m pip install -e '.[test]'"),
            sh("Import check", "python -c 'import ciflow'"),
            display_name="Check",
        ),

        # Test job - runs pytest on every supported interpreter
        job(
            "test",
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            needs=["check"],
            matrix={"python": ["3.10", "3.11", "3.12"]},
            display_name="Test Suite",
        ),

        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
            needs=["check"],
            display_name="Lint",
        ),

        # A freshly published advisory must not turn the pipeline red;
        # license problems must.
        job(
            "audit",
            sh(
                "Dependency audit",
                "case '${{ matrix.checks }}' in "
                "advisories) pip-audit ;; "
                "licenses) pip-licenses --fail-on 'GPL' ;; "
                "esac",
            ),
            needs=["check"],
            matrix={"checks": ["advisories", "licenses"]},
            continue_on_error="${{ matrix.checks == 'advisories' }}",
        ),

        gate("ci-success", "check", "test", "lint", "audit", display_name="CI"),
        name="ciflow",
        gates=["ci-success"],
        on=["push", "pull_request"],
    )
