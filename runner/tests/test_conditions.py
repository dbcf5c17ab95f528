"""Tests for stage condition evaluation."""

import pytest

from runner.src.errors import ConditionEvaluationError
from runner.src.models.pipeline import (
    AllOf,
    Always,
    AnyOf,
    Branch,
    EnvEquals,
    Expression,
    FileExists,
    Not,
    ParamFlag,
)
from runner.src.services.conditions import ConditionContext, evaluate, evaluate_expression, is_truthy

@pytest.fixture
def context(tmp_path):
    (tmp_path / "Dockerfile").write_text("FROM scratch\n")
    return ConditionContext(
        params={"DEPLOY": "true", "SKIP": "no", "BRANCH_NAME": "release/1.2", "COUNT": "3"},
        env={"CI": "1", "EMPTY": ""},
        workspace=tmp_path,
    )

@pytest.mark.parametrize("value", ["1", "true", "TRUE", "yes", "y", "on", " True "])
def test_truthy_values(value):
    assert is_truthy(value)

@pytest.mark.parametrize("value", ["", "0", "false", "no", "off", None, "maybe"])
def test_falsy_values(value):
    assert not is_truthy(value)

def test_no_condition_always_runs(context):
    assert evaluate(None, context)
    assert evaluate(Always(), context)

def test_param_flag(context):
    assert evaluate(ParamFlag(name="DEPLOY"), context)
    assert not evaluate(ParamFlag(name="SKIP"), context)
    assert not evaluate(ParamFlag(name="UNSET"), context)

def test_file_exists(context):
    assert evaluate(FileExists(path="Dockerfile"), context)
    assert not evaluate(FileExists(path="Makefile"), context)

def test_env_equals(context):
    assert evaluate(EnvEquals(name="CI"), context)
    assert evaluate(EnvEquals(name="CI", equals="1"), context)
    assert not evaluate(EnvEquals(name="CI", equals="true"), context)
    assert not evaluate(EnvEquals(name="EMPTY"), context)
    assert not evaluate(EnvEquals(name="UNSET"), context)

def test_branch_glob(context):
    assert evaluate(Branch(pattern="release/*"), context)
    assert not evaluate(Branch(pattern="main"), context)
    assert not evaluate(Branch(pattern="*"), ConditionContext())

def test_compound_conditions(context):
    assert evaluate(AllOf(conditions=(ParamFlag(name="DEPLOY"), FileExists(path="Dockerfile"))), context)
    assert not evaluate(AllOf(conditions=(ParamFlag(name="DEPLOY"), ParamFlag(name="SKIP"))), context)
    assert evaluate(AnyOf(conditions=(ParamFlag(name="SKIP"), EnvEquals(name="CI"))), context)
    assert evaluate(Not(condition=ParamFlag(name="SKIP")), context)

def test_compound_conditions_short_circuit(context):
    broken = Expression(source="no_such_name")

    assert not evaluate(AllOf(conditions=(ParamFlag(name="SKIP"), broken)), context)
    assert evaluate(AnyOf(conditions=(ParamFlag(name="DEPLOY"), broken)), context)

    with pytest.raises(ConditionEvaluationError):
        evaluate(AllOf(conditions=(ParamFlag(name="DEPLOY"), broken)), context)

@pytest.mark.parametrize("source, expected", [
    ("params.DEPLOY == 'true'", True),
    ("params['SKIP'] == 'yes'", False),
    ("truthy(params.DEPLOY) and env.CI == '1'", True),
    ("params.get('MISSING', 'fallback') == 'fallback'", True),
    ("env.get('MISSING') is None", None),
    ("lower('MAIN') in ['main', 'master']", True),
    ("file_exists('Dockerfile') and not file_exists('Makefile')", True),
    ("params.BRANCH_NAME != 'main' or params.SKIP", True),
    ("'1' < params.COUNT <= '3'", True),
    ("'DEPLOY' in params and 'MISSING' not in env", True),
    ("'MISSING' in params", False),
])
def test_expressions(context, source, expected):
    if expected is None:
        with pytest.raises(ConditionEvaluationError):
            evaluate_expression(source, context)
    else:
        assert is_truthy(evaluate_expression(source, context)) is expected

def test_expression_condition(context):
    assert evaluate(Expression(source="params.DEPLOY == 'true'"), context)
    assert not evaluate(Expression(source="params.SKIP"), context)

@pytest.mark.parametrize("source", [
    "params.DEPLOY ==",
    "__import__('os').system('true')",
    "open('x')",
    "params.DEPLOY.upper()",
    "(lambda: 1)()",
    "params.COUNT + 1",
    "unknown.DEPLOY",
    "params.MISSING < 3",
])
def test_bad_expressions_raise(context, source):
    with pytest.raises(ConditionEvaluationError):
        evaluate_expression(source, context)

def test_evaluation_has_no_side_effects(context):
    params = dict(context.params)
    evaluate(AllOf(conditions=(ParamFlag(name="DEPLOY"), Expression(source="params.get('X', 'y') == 'y'"))), context)

    assert dict(context.params) == params
    assert "X" not in context.params
