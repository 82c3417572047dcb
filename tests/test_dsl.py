"""Tests for the workflow DSL helpers."""

import pytest

from jobgraph.dsl import build, call, download_artifact, job, matrix, sh, upload_artifact, wf
from jobgraph.model import Environment, MatrixSpec, RunDefinition


def test_job_helper():
    j = job("test", sh("a", "echo a"), steps_list=[sh("first", "echo first")], needs="build", cwd="app")

    assert [s.name for s in j.steps] == ["first", "a"]
    assert all(s.cwd == "app" for s in j.steps)
    assert j.needs == ("build",)


def test_job_without_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_matrix_helper():
    m = matrix(os=["a", "b"], node=[18]).exclude(os="b")
    spec = m.spec()

    assert spec == MatrixSpec(axes={"os": ("a", "b"), "node": (18,)}, exclude=({"os": "b"},))
    assert job("t", sh("s", "echo"), matrix={"os": ["a"]}).matrix == MatrixSpec(axes={"os": ("a",)})


def test_artifact_steps():
    up = upload_artifact("dist", "build/", retention_days=3)
    down = download_artifact("dist")

    assert up.kind == "upload-artifact"
    assert dict(up.data) == {"name": "dist", "path": "build/", "retention_days": 3}
    assert down.kind == "download-artifact"
    assert down.name == "download dist"
    assert dict(down.data) == {"name": "dist"}


def test_builder():
    j = (
        build("deploy")
        .depends_on("build", "test")
        .when("ctx.branch == 'main'")
        .define_step("ship", "./ship.sh", id="ship")
        .with_env(REGION="eu", REPLICAS=3)
        .with_outputs(url="steps.ship.outputs.url")
        .with_timeout(60)
        .build()
    )

    assert j.needs == ("build", "test")
    assert j.condition == "ctx.branch == 'main'"
    assert dict(j.env) == {"REGION": "eu", "REPLICAS": "3"}
    assert j.steps[0].ref == "ship"
    assert j.timeout == 60


def test_wf_and_call():
    inner = wf(job("x", sh("s", "echo")), name="inner")
    outer = wf(call("sub", inner, needs=["a"]), name="outer", env={"N": 1})

    assert isinstance(outer, RunDefinition)
    assert outer.job("sub").workflow is inner
    assert outer.job("sub").steps == ()
    assert dict(outer.env) == {"N": "1"}


def test_environment_forms():
    assert job("a", sh("s", "echo"), environment="staging").environment == Environment(name="staging")
    assert job(
        "a", sh("s", "echo"), environment={"name": "prod", "url": "${{ steps.ship.outputs.url }}"}
    ).environment == Environment(name="prod", url="${{ steps.ship.outputs.url }}")
    assert job("a", sh("s", "echo")).environment is None

    built = build("deploy").define_step("ship", "./ship.sh").deploys_to("prod", url="https://example.test").build()
    assert built.environment == Environment(name="prod", url="https://example.test")
