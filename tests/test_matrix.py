import pytest

from ciflow.errors import InvalidMatrix
from ciflow.matrix import assignments, expand_all, expand_job

from conftest import ok


def test_two_axes_expand_to_product():
    j = ok("test", matrix={"os": ["linux", "mac", "win"], "py": ["3.11", "3.12"]})
    instances = expand_job(j)

    assert len(instances) == 6
    assert len({i.identity for i in instances}) == 6
    # rightmost axis varies fastest
    assert [i.matrix_dict for i in instances[:3]] == [
        {"os": "linux", "py": "3.11"},
        {"os": "linux", "py": "3.12"},
        {"os": "mac", "py": "3.11"},
    ]
    assert [i.index for i in instances] == list(range(6))


def test_no_axes_is_a_single_instance():
    instances = expand_job(ok("lint"))
    assert len(instances) == 1
    assert instances[0].matrix == ()
    assert instances[0].key == "lint"


def test_axis_without_values_means_no_matrix():
    assert assignments(ok("lint", matrix={"py": []})) == [()]


def test_continue_on_error_per_cell_expression():
    j = ok(
        "cargo-deny",
        matrix={"checks": ["advisories", "bans licenses sources"]},
        continue_on_error="${{ matrix.checks == 'advisories' }}",
    )
    flags = {i.key: i.continue_on_error for i in expand_job(j)}
    assert flags == {
        "cargo-deny (advisories)": True,
        "cargo-deny (bans licenses sources)": False,
    }


def test_continue_on_error_callable_and_bool():
    j = ok("t", matrix={"py": ["3.12", "3.13"]}, continue_on_error=lambda m: m["py"] == "3.13")
    assert [i.continue_on_error for i in expand_job(j)] == [False, True]

    j = ok("t", matrix={"py": ["3.12", "3.13"]}, continue_on_error=True)
    assert all(i.continue_on_error for i in expand_job(j))


def test_repeated_axis_value_is_rejected():
    with pytest.raises(InvalidMatrix):
        expand_job(ok("t", matrix={"py": ["3.12", "3.12"]}))


@pytest.mark.parametrize("values", [[1, 1.0], [1, True], [0, False]])
def test_values_equal_across_types_are_repeats(values):
    with pytest.raises(InvalidMatrix):
        expand_job(ok("t", matrix={"n": values}))


def test_expand_all_keeps_job_order():
    expanded = expand_all([ok("a", matrix={"x": [1, 2]}), ok("b")])
    assert list(expanded) == ["a", "b"]
    assert [i.key for i in expanded["a"]] == ["a (1)", "a (2)"]
