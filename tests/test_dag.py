import pytest

from ciflow.dag import build_dag, build_graph, find_cycle, topo_levels
from ciflow.errors import (
    CycleDetected,
    DuplicateJobName,
    InvalidCondition,
    UnknownDependency,
    UnknownGate,
    WorkflowDefinitionError,
)

from conftest import gate_scenario_jobs, ok


def test_build_graph_for_gate_scenario():
    graph = build_graph(gate_scenario_jobs(), gates=["ci-success"])

    assert list(graph.jobs) == ["check", "test", "lint", "cargo-deny", "ci-success"]
    assert graph.dependents("check") == {"test", "lint", "cargo-deny", "ci-success"}
    assert graph.needs["ci-success"] == ("check", "test", "lint", "cargo-deny")
    assert graph.order[0] == "check"
    assert graph.order[-1] == "ci-success"
    assert graph.terminal_jobs() == ["ci-success"]


def test_duplicate_job_name():
    with pytest.raises(DuplicateJobName) as exc:
        build_graph([ok("a"), ok("b"), ok("a")])
    assert exc.value.names == ["a"]


def test_unknown_dependency():
    with pytest.raises(UnknownDependency) as exc:
        build_graph([ok("a", needs=["nope"])])
    assert exc.value.job == "a"
    assert exc.value.dependency == "nope"


def test_two_job_cycle():
    with pytest.raises(CycleDetected) as exc:
        build_graph([ok("A", needs=["B"]), ok("B", needs=["A"])])
    assert exc.value.cycle == ["A", "B"]
    assert "A -> B -> A" in str(exc.value)


def test_cycle_reported_in_encounter_order():
    jobs = [
        ok("root"),
        ok("x", needs=["root", "z"]),
        ok("y", needs=["x"]),
        ok("z", needs=["y"]),
    ]
    assert find_cycle(jobs) == ["x", "z", "y"]


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleDetected) as exc:
        build_graph([ok("a", needs=["a"])])
    assert exc.value.cycle == ["a"]


def test_definition_errors_share_a_base():
    for jobs in ([ok("a"), ok("a")], [ok("a", needs=["b"])], [ok("a", needs=["a"])]):
        with pytest.raises(WorkflowDefinitionError):
            build_graph(jobs)


def test_no_cycle_in_diamond():
    jobs = [ok("a"), ok("b", needs=["a"]), ok("c", needs=["a"]), ok("d", needs=["b", "c"])]
    assert find_cycle(jobs) is None


def test_topo_levels_group_independent_jobs():
    adj, indeg = build_dag(gate_scenario_jobs())
    assert topo_levels(adj, indeg) == [
        ["check"],
        ["test", "lint", "cargo-deny"],
        ["ci-success"],
    ]


def test_condition_may_only_reference_needed_jobs():
    with pytest.raises(InvalidCondition):
        build_graph([ok("a"), ok("b"), ok("c", needs=["a"], if_="needs.b.result == 'success'")])


def test_condition_syntax_error_is_a_definition_error():
    with pytest.raises(InvalidCondition):
        build_graph([ok("a", if_="success( &&")])


def test_job_condition_cannot_use_matrix():
    with pytest.raises(InvalidCondition):
        build_graph([ok("a", matrix={"x": [1]}, if_="matrix.x == 1")])


def test_continue_on_error_must_reference_declared_axis():
    with pytest.raises(InvalidCondition):
        build_graph([ok("a", matrix={"x": [1]}, continue_on_error="matrix.y == 1")])


def test_unknown_gate():
    with pytest.raises(UnknownGate):
        build_graph([ok("a")], gates=["ci-success"])
