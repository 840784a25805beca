import pytest

from ciflow.conditions import (
    ConditionContext,
    ExpressionError,
    evaluate_condition,
    parse,
    resolve_continue_on_error,
)
from ciflow.model import Conclusion

from conftest import ok

S, F, K, C = Conclusion.SUCCESS, Conclusion.FAILURE, Conclusion.SKIPPED, Conclusion.CANCELLED


def _job(condition=None, needs=("a", "b")):
    return ok("j", needs=list(needs), if_=condition)


@pytest.mark.parametrize(
    "needs, expected",
    [
        ({"a": S, "b": S}, True),
        ({"a": S, "b": F}, False),
        ({"a": S, "b": K}, False),
        ({"a": S, "b": C}, False),
    ],
)
def test_default_condition_is_success(needs, expected):
    assert evaluate_condition(_job(), needs) is expected


def test_default_condition_without_needs_runs():
    assert evaluate_condition(_job(needs=()), {}) is True


@pytest.mark.parametrize(
    "needs, expected",
    [
        ({"a": S, "b": S}, False),
        ({"a": S, "b": F}, True),
        ({"a": K, "b": S}, False),
        ({"a": C, "b": S}, False),
    ],
)
def test_failure_function(needs, expected):
    assert evaluate_condition(_job("${{ failure() }}"), needs) is expected


def test_always_runs_after_anything():
    for c in (S, F, K, C):
        assert evaluate_condition(_job("always()"), {"a": c, "b": c}) is True


def test_cancelled_function():
    assert evaluate_condition(_job("cancelled()"), {"a": C, "b": S}) is True
    assert evaluate_condition(_job("cancelled()"), {"a": F, "b": S}) is False
    assert evaluate_condition(_job("cancelled()"), {"a": S, "b": S}, cancelled=True) is True


def test_bool_condition():
    assert evaluate_condition(_job(False), {"a": S, "b": S}) is False
    assert evaluate_condition(_job(True), {"a": S, "b": S}) is True
    # a literal true still needs every dependency to have succeeded
    assert evaluate_condition(_job(True), {"a": F, "b": S}) is False
    assert evaluate_condition(_job(True), {"a": S, "b": C}) is False


def test_expression_without_status_function_implies_success():
    cond = "needs.a.result == 'success'"
    assert evaluate_condition(_job(cond), {"a": S, "b": S}) is True
    # b failed: the implicit success() keeps the job from running
    assert evaluate_condition(_job(cond), {"a": S, "b": F}) is False


def test_boolean_combination_of_results():
    cond = "always() && (needs.a.result == 'failure' || needs.b.result == 'skipped')"
    assert evaluate_condition(_job(cond), {"a": F, "b": S}) is True
    assert evaluate_condition(_job(cond), {"a": S, "b": K}) is True
    assert evaluate_condition(_job(cond), {"a": S, "b": S}) is False


def test_negation_and_case_insensitive_strings():
    assert evaluate_condition(_job("always() && !(needs.a.result == 'SUCCESS')"), {"a": F, "b": S})
    assert not evaluate_condition(_job("always() && needs.a.result != 'Success'"), {"a": S, "b": S})


def test_callable_condition_sees_context():
    seen = {}

    def cond(ctx: ConditionContext):
        seen["ctx"] = ctx
        return ctx.result("a") == "failure" and not ctx.success()

    assert evaluate_condition(_job(cond), {"a": F, "b": S, "unrelated": S}) is True
    # only needed jobs are visible
    assert set(seen["ctx"].needs) == {"a", "b"}


def test_literals():
    ctx = ConditionContext()
    assert parse("true").evaluate(ctx) is True
    assert parse("null").evaluate(ctx) is None
    assert parse("1 == 1.0").evaluate(ctx) is True
    assert parse("'it''s'").evaluate(ctx) == "it's"
    assert parse("'' || 'fallback'").evaluate(ctx) == "fallback"


@pytest.mark.parametrize("bad", ["", "${{ }}", "success(", "a ==", "foo()", "'unterminated", "a @ b"])
def test_syntax_errors(bad):
    with pytest.raises(ExpressionError):
        parse(bad)


def test_matrix_expression_per_cell():
    j = ok("deny", matrix={"checks": ["advisories", "licenses"]},
           continue_on_error="${{ matrix.checks == 'advisories' }}")
    assert resolve_continue_on_error(j, {"checks": "advisories"}) is True
    assert resolve_continue_on_error(j, {"checks": "licenses"}) is False


def test_matrix_number_comparison():
    j = ok("t", matrix={"py": [3, 4]}, continue_on_error="matrix.py == '4'")
    assert resolve_continue_on_error(j, {"py": 4}) is True
    assert resolve_continue_on_error(j, {"py": 3}) is False
