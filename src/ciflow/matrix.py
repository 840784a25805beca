# matrix.py
from __future__ import annotations

from itertools import product
from typing import Dict, Iterable, List, Tuple

from .conditions import ExpressionError, resolve_continue_on_error
from .errors import InvalidMatrix
from .model import Assignment, Job, JobInstance


def assignments(job: Job) -> List[Assignment]:
    """
    Cartesian product of the job's matrix axes.

    Axes keep declaration order and the rightmost axis varies fastest.
    No axes (or an axis with no values) means a single empty assignment.
    """
    axes = [(name, tuple(values)) for name, values in job.matrix.items()]
    if not axes or any(len(values) == 0 for _, values in axes):
        return [()]

    for name, values in axes:
        seen = set()
        for v in values:
            # compare by equality: 1 == 1.0 == True inside an assignment tuple
            if v in seen:
                raise InvalidMatrix(job.name, f"axis '{name}' repeats value {v!r}")
            seen.add(v)

    names = [name for name, _ in axes]
    return [tuple(zip(names, combo)) for combo in product(*(values for _, values in axes))]


def expand_job(job: Job) -> Tuple[JobInstance, ...]:
    instances = []
    for index, assignment in enumerate(assignments(job)):
        try:
            coe = resolve_continue_on_error(job, dict(assignment))
        except ExpressionError as e:
            raise InvalidMatrix(job.name, f"continue-on-error: {e}") from e
        instances.append(
            JobInstance(job=job, matrix=assignment, continue_on_error=coe, index=index)
        )
    return tuple(instances)


def expand_all(jobs: Iterable[Job]) -> Dict[str, Tuple[JobInstance, ...]]:
    """Expand every job. All instances of a job are created together, here."""
    return {job.name: expand_job(job) for job in jobs}
