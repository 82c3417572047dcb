"""Tests for the gate / output expression language."""

import pytest

from jobgraph.errors import ConfigurationError
from jobgraph.expressions import (
    UNDEFINED,
    Scope,
    compile_expression,
    compile_template,
    evaluate,
    gate,
    render,
)
from jobgraph.model import RunContext

CTX = RunContext(event="push", branch="main", ref="refs/heads/main", inputs={"dry_run": True, "count": "3"})


def needs(**results):
    return {name: {"result": result, "outputs": {}} for name, result in results.items()}


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("ctx.branch == 'main'", True),
        ("ctx.branch != 'main'", False),
        ("ctx.event == 'push' && ctx.branch == 'main'", True),
        ("ctx.event == 'pull_request' || ctx.branch == 'main'", True),
        ("!(ctx.branch == 'main')", False),
        ("inputs.dry_run", True),
        ("inputs.count == 3", True),
        ("inputs.count > 2", True),
        ("startsWith(ctx.ref, 'refs/heads/')", True),
        ("endswith(ctx.ref, '/main')", True),
        ("contains(ctx.branch, 'ai')", True),
        ("matches(ctx.branch, 'ma*')", True),
        ("format('{0}-{1}', ctx.event, ctx.branch)", "push-main"),
        ("'it''s'", "it's"),
        ("null", None),
        ("1.5", 1.5),
        ("-1", -1),
        ("-2.5", -2.5),
        ("inputs.count > -1", True),
        ("fromJSON('{\"n\": 2}')", {"n": 2}),
        ("fromJSON('not json') == 1", False),
    ],
)
def test_evaluate(expression, expected):
    assert evaluate(expression, CTX) == expected


def test_wrapper_is_stripped():
    assert evaluate("${{ ctx.branch }}", CTX) == "main"


def test_missing_paths_are_undefined_and_compare_false():
    assert evaluate("ctx.nope", CTX) is UNDEFINED
    assert evaluate("ctx.nope.deeper", CTX) is UNDEFINED
    assert evaluate("ctx.nope == ''", CTX) is False
    assert evaluate("ctx.nope != ''", CTX) is False
    assert evaluate("needs.build.outputs.version == '1'", CTX) is False


def test_upstream_outputs():
    upstream = {"pre-deployment": {"result": "success", "outputs": {"should-deploy": "true"}}}
    assert evaluate("needs.pre-deployment.outputs.should-deploy == 'true'", CTX, upstream) is True
    # underscore spelling finds the hyphenated key
    assert evaluate("needs.pre-deployment.outputs.should_deploy", CTX, upstream) == "true"


def test_index_access():
    assert evaluate("matrix['os']", CTX, matrix={"os": "linux"}) == "linux"
    assert evaluate("steps.s.outputs.list[1]", CTX, steps={"s": {"outputs": {"list": ["a", "b"]}}}) == "b"
    assert evaluate("steps.s.outputs.list[-1]", CTX, steps={"s": {"outputs": {"list": ["a", "b"]}}}) == "b"


def test_join():
    steps = {"s": {"outputs": {"list": ["a", "b"]}}}
    assert evaluate("join(steps.s.outputs.list, '+')", CTX, steps=steps) == "a+b"
    assert evaluate("join(steps.s.outputs.list)", CTX, steps=steps) == "a,b"


def test_boolean_operators_return_deciding_operand():
    assert evaluate("ctx.nope || 'fallback'", CTX) == "fallback"
    assert evaluate("ctx.branch && ctx.event", CTX) == "push"


@pytest.mark.parametrize(
    "expression",
    ["ctx.branch ==", "(ctx.branch", "unknown_fn()", "always(1)", "ctx.", "ctx.branch = 'x'", "", "'open", "- ctx.branch"],
)
def test_malformed_expressions_raise(expression):
    with pytest.raises(ConfigurationError):
        compile_expression(expression)


def test_status_function_detection():
    assert compile_expression("always()").uses_status_function
    assert compile_expression("failure() && ctx.branch == 'main'").uses_status_function
    assert not compile_expression("ctx.branch == 'main'").uses_status_function


# ----------------------------------------------------------------------
# Gates
# ----------------------------------------------------------------------

def test_gate_defaults_to_success():
    assert gate(None, Scope(ctx=CTX, needs=needs(build="success"))) is True
    assert gate(None, Scope(ctx=CTX, needs=needs(build="failure"))) is False
    assert gate(None, Scope(ctx=CTX, needs=needs(build="skipped"))) is False


def test_gate_without_status_function_requires_success():
    scope = Scope(ctx=CTX, needs=needs(build="failure"))
    assert gate("ctx.branch == 'main'", scope) is False


def test_gate_with_status_function_decides_alone():
    failed = Scope(ctx=CTX, needs=needs(build="failure"))
    assert gate("always()", failed) is True
    assert gate("failure()", failed) is True
    assert gate("success()", failed) is False
    assert gate("cancelled()", failed) is False
    assert gate("cancelled()", Scope(ctx=CTX, cancelled=True)) is True


def test_explicit_step_status_overrides_needs():
    scope = Scope(ctx=CTX, needs=needs(build="failure"), success=True, failure=False)
    assert gate("ctx.branch == 'main'", scope) is True


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------

def test_render_template():
    scope = Scope(ctx=CTX, matrix={"node": 20, "lts": True}, env={"TARGET": "prod"})
    assert render("deploy ${{ env.TARGET }} on node ${{ matrix.node }} lts=${{ matrix.lts }}", scope) == (
        "deploy prod on node 20 lts=true"
    )
    assert render("missing=[${{ ctx.nope }}]", scope) == "missing=[]"
    assert render("plain text", scope) == "plain text"


def test_compile_template_rejects_bad_placeholder():
    with pytest.raises(ConfigurationError):
        compile_template("echo ${{ ctx.branch == }}")
    assert len(compile_template("${{ ctx.a }} and ${{ ctx.b }}")) == 2
