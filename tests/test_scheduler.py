"""Tests for the job graph scheduler."""

import threading
import time

import pytest

from jobgraph.artifacts import ArtifactStore
from jobgraph.dsl import call, download_artifact, job, matrix, sh, upload_artifact, wf
from jobgraph.errors import ConfigurationError
from jobgraph.model import JobSpec, JobStatus, RunStatus
from jobgraph.scheduler import Scheduler, default_workers, run


def pipeline():
    return wf(
        job("build", sh("compile", "echo building; set version=1.2.3", id="compile"),
            outputs={"version": "steps.compile.outputs.version"}),
        job("test", sh("unit", "echo testing"), needs=["build"]),
        job("deploy", sh("ship", "echo deploy ${{ needs.build.outputs.version }}"),
            needs=["test", "build"], if_="ctx.branch == 'main'"),
        name="ci",
    )


def test_build_test_deploy_on_main(fake_executor):
    result = run(pipeline(), {"branch": "main"}, fake_executor, max_workers=2)

    assert result.status is RunStatus.SUCCEEDED
    assert result.statuses() == {
        "build": JobStatus.SUCCEEDED,
        "test": JobStatus.SUCCEEDED,
        "deploy": JobStatus.SUCCEEDED,
    }
    assert "echo deploy 1.2.3" in fake_executor.commands
    assert result.instance("build").outputs == {"version": "1.2.3"}


def test_deploy_skipped_on_feature_branch(fake_executor):
    result = run(pipeline(), {"branch": "feature"}, fake_executor, max_workers=2)

    assert result.status is RunStatus.SUCCEEDED
    assert result.instance("deploy").status is JobStatus.SKIPPED
    assert result.instance("deploy").reason == "condition false"
    assert fake_executor.calls_for("deploy") == []


def test_build_failure_skips_dependents_and_fails_run(fake_executor):
    definition = wf(
        job("build", sh("compile", "echo building; exit 2")),
        job("test", sh("unit", "echo testing"), needs=["build"]),
    )
    result = run(definition, {}, fake_executor, max_workers=2)

    assert result.status is RunStatus.FAILED
    assert result.instance("build").status is JobStatus.FAILED
    assert result.instance("test").status is JobStatus.SKIPPED
    assert result.instance("test").reason == "needs build failure"
    assert [e.kind for e in result.errors] == ["StepExecutionError"]
    assert result.errors[0].instance == "build"
    assert result.errors[0].step == "compile"
    assert result.errors[0].details["exit_code"] == 2


def test_outputs_only_captured_on_success(fake_executor):
    definition = wf(
        job("build", sh("compile", "set version=9; exit 1", id="c"),
            outputs={"version": "steps.c.outputs.version"}),
        job("report", sh("print", "echo v=${{ needs.build.outputs.version }}"),
            needs=["build"], if_="always()"),
    )
    result = run(definition, {}, fake_executor, max_workers=1)

    assert result.instance("build").outputs == {}
    assert result.instance("report").status is JobStatus.SUCCEEDED
    assert "echo v=" in fake_executor.commands


def test_never_more_running_than_worker_limit(fake_executor):
    jobs = [job(f"j{i}", sh("work", "sleep 0.1")) for i in range(6)]
    scheduler = Scheduler(wf(*jobs), {}, fake_executor, max_workers=2)
    result = scheduler.run()

    assert result.status is RunStatus.SUCCEEDED
    assert fake_executor.peak <= 2
    assert 1 <= scheduler.peak_running <= 2


def test_ready_queue_is_fifo(fake_executor):
    jobs = [job(name, sh("work", f"echo {name}")) for name in ("a", "b", "c", "d")]
    run(wf(*jobs), {}, fake_executor, max_workers=1)

    assert fake_executor.commands == ["echo a", "echo b", "echo c", "echo d"]


def test_cycle_is_rejected_before_anything_runs(fake_executor):
    definition = wf(
        job("a", sh("x", "echo a"), needs=["c"]),
        job("b", sh("x", "echo b"), needs=["a"]),
        job("c", sh("x", "echo c"), needs=["b"]),
        job("free", sh("x", "echo free")),
    )
    with pytest.raises(ConfigurationError, match="cycle"):
        run(definition, {}, fake_executor)
    assert fake_executor.calls == []


def test_malformed_condition_is_rejected_before_anything_runs(fake_executor):
    definition = wf(
        job("a", sh("x", "echo a")),
        job("b", sh("x", "echo b"), needs=["a"], if_="ctx.branch == "),
    )
    with pytest.raises(ConfigurationError):
        run(definition, {}, fake_executor)
    assert fake_executor.calls == []


def test_invalid_worker_limit():
    with pytest.raises(ValueError):
        Scheduler(wf(job("a", sh("x", "echo"))), {}, max_workers=0)
    assert default_workers() >= 1


# ----------------------------------------------------------------------
# Conditions and status functions
# ----------------------------------------------------------------------

def test_always_and_failure_jobs_run_after_failure(fake_executor):
    definition = wf(
        job("build", sh("compile", "exit 1")),
        job("cleanup", sh("rm", "echo cleanup"), needs=["build"], if_="always()"),
        job("notify", sh("mail", "echo notify"), needs=["build"], if_="failure()"),
        job("on-success", sh("x", "echo ok"), needs=["build"], if_="success()"),
    )
    result = run(definition, {}, fake_executor, max_workers=2)

    assert result.instance("cleanup").status is JobStatus.SUCCEEDED
    assert result.instance("notify").status is JobStatus.SUCCEEDED
    assert result.instance("on-success").status is JobStatus.SKIPPED
    assert result.status is RunStatus.FAILED


def test_needs_result_strings(fake_executor):
    definition = wf(
        job("build", sh("compile", "exit 1")),
        job("plain", sh("x", "echo plain"), needs=["build"], if_="needs.build.result == 'failure'"),
        job("explicit", sh("x", "echo explicit"), needs=["build"],
            if_="always() && needs.build.result == 'failure'"),
    )
    result = run(definition, {}, fake_executor, max_workers=1)

    # without a status function the condition is implicitly success() && ...
    assert result.instance("plain").status is JobStatus.SKIPPED
    assert result.instance("explicit").status is JobStatus.SUCCEEDED


def test_skipped_dependency_propagates(fake_executor):
    definition = wf(
        job("a", sh("x", "echo a"), if_="ctx.event == 'push'"),
        job("b", sh("x", "echo b"), needs=["a"]),
        job("c", sh("x", "echo c"), needs=["a"], if_="needs.a.result == 'skipped' || always()"),
    )
    result = run(definition, {"event": "manual"}, fake_executor, max_workers=1)

    assert result.instance("a").status is JobStatus.SKIPPED
    assert result.instance("b").status is JobStatus.SKIPPED
    assert result.instance("c").status is JobStatus.SUCCEEDED
    assert result.status is RunStatus.SUCCEEDED


# ----------------------------------------------------------------------
# Matrix
# ----------------------------------------------------------------------

def test_matrix_instances_and_dependent_waits_for_all(fake_executor):
    definition = wf(
        job("test", sh("run", "echo ${{ matrix.os }}-${{ matrix.node }}; set last=${{ matrix.os }}${{ matrix.node }}",
                       id="run"),
            matrix=matrix(os=["a", "b"], node=[18, 20]).exclude(os="b", node=18),
            outputs={"last": "steps.run.outputs.last"}),
        job("report", sh("print", "echo ${{ needs.test.outputs.last }}"), needs=["test"]),
    )
    result = run(definition, {}, fake_executor, max_workers=3)

    labels = [i.label for i in result.instances]
    assert labels == ["test (a, 18)", "test (a, 20)", "test (b, 20)", "report"]
    assert sorted(fake_executor.calls_for("test (a, 18)")) == ["echo a-18; set last=a18"]
    # outputs merge in expansion order, later instances win
    assert fake_executor.calls_for("report") == ["echo b20"]
    assert result.instance("test (b, 20)").matrix == {"os": "b", "node": 20}


def test_one_failing_matrix_instance_fails_the_job(fake_executor):
    definition = wf(
        job("test", sh("run", "exit ${{ matrix.shard == 2 && 1 || 0 }}"), matrix={"shard": [1, 2, 3]}),
        job("after", sh("x", "echo after"), needs=["test"]),
        job("inspect", sh("x", "echo ${{ needs.test.result }}"), needs=["test"], if_="always()"),
    )
    result = run(definition, {}, fake_executor, max_workers=3)

    assert [i.status for i in result.instances if i.job == "test"] == [
        JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SUCCEEDED,
    ]
    assert result.instance("after").status is JobStatus.SKIPPED
    assert "echo failure" in fake_executor.commands


# ----------------------------------------------------------------------
# Timeouts and cancellation
# ----------------------------------------------------------------------

def test_timeout_cancels_instance_and_skips_dependents(fake_executor):
    definition = wf(
        job("slow", sh("wait", "sleep 5"), timeout=0.2),
        job("after", sh("x", "echo after"), needs=["slow"]),
    )
    started = time.monotonic()
    result = run(definition, {}, fake_executor, max_workers=2)

    assert time.monotonic() - started < 3
    assert result.instance("slow").status is JobStatus.CANCELLED
    assert result.instance("slow").reason == "timeout"
    assert result.instance("after").status is JobStatus.SKIPPED
    assert result.errors[0].kind == "StepTimeout"


def test_timeout_enforced_when_executor_ignores_it(fake_executor):
    definition = wf(job("stuck", sh("wait", "hang 1.5"), timeout=0.1))
    started = time.monotonic()
    result = run(definition, {}, fake_executor, max_workers=1)

    assert time.monotonic() - started < 1.2
    assert result.instance("stuck").status is JobStatus.CANCELLED
    assert result.instance("stuck").outputs == {}


def test_timed_out_instance_frees_its_worker_slot(fake_executor):
    definition = wf(
        job("stuck", sh("wait", "hang 1.5"), timeout=0.1),
        job("free", sh("x", "echo free")),
    )
    result = run(definition, {}, fake_executor, max_workers=1)

    free = result.instance("free")
    assert result.instance("stuck").status is JobStatus.CANCELLED
    assert free.status is JobStatus.SUCCEEDED
    assert free.started_at - result.started_at < 1.0


def test_cancel_marks_everything_cancelled(fake_executor):
    definition = wf(
        job("first", sh("wait", "sleep 0.5")),
        job("second", sh("x", "echo second"), needs=["first"]),
    )
    scheduler = Scheduler(definition, {}, fake_executor, max_workers=1)
    timer = threading.Timer(0.1, scheduler.cancel)
    timer.start()
    try:
        result = scheduler.run()
    finally:
        timer.cancel()

    assert result.status is RunStatus.CANCELLED
    assert result.instance("first").status is JobStatus.CANCELLED
    assert result.instance("second").status is JobStatus.CANCELLED
    assert fake_executor.calls_for("second") == []


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------

def test_retry_until_success(fake_executor):
    definition = wf(job("net", sh("fetch", "flaky 2", retry=3)))
    result = run(definition, {}, fake_executor, max_workers=1)

    assert result.status is RunStatus.SUCCEEDED
    assert result.instance("net").steps[0]["attempts"] == 3


def test_retry_budget_exhausted(fake_executor):
    definition = wf(job("net", sh("fetch", "flaky 5", retry=2)))
    result = run(definition, {}, fake_executor, max_workers=1)

    assert result.instance("net").status is JobStatus.FAILED
    assert len(fake_executor.calls) == 2


def test_continue_on_error_step(fake_executor):
    definition = wf(
        job(
            "lint",
            sh("style", "exit 3", id="style", continue_on_error=True),
            sh("report", "echo style failed", if_="steps.style.outcome == 'failure'"),
            sh("never", "echo never", if_="steps.style.conclusion == 'failure'"),
        ),
    )
    result = run(definition, {}, fake_executor, max_workers=1)

    inst = result.instance("lint")
    assert inst.status is JobStatus.SUCCEEDED
    assert inst.steps[0]["outcome"] == "failure"
    assert inst.steps[0]["conclusion"] == "success"
    assert inst.steps[2]["outcome"] == "skipped"
    assert fake_executor.commands == ["exit 3", "echo style failed"]


def test_failed_step_aborts_remaining_steps(fake_executor):
    definition = wf(job("j", sh("one", "exit 1"), sh("two", "echo two")))
    result = run(definition, {}, fake_executor, max_workers=1)

    assert fake_executor.commands == ["exit 1"]
    assert [s["name"] for s in result.instance("j").steps] == ["one"]


def test_continue_on_error_job_does_not_fail_run(fake_executor):
    definition = wf(
        job("optional", sh("x", "exit 1"), continue_on_error=True),
        job("after", sh("x", "echo after"), needs=["optional"]),
        job("other", sh("x", "echo other")),
    )
    result = run(definition, {}, fake_executor, max_workers=2)

    assert result.instance("optional").status is JobStatus.FAILED
    assert result.instance("optional").required is False
    assert result.instance("after").status is JobStatus.SKIPPED
    assert result.status is RunStatus.SUCCEEDED


def test_env_layers_render_into_steps(fake_executor):
    captured = {}

    def executor(request):
        captured[request.step.name] = dict(request.env)
        return fake_executor(request)

    definition = wf(
        job("j", sh("s", "echo ${{ env.TARGET }}", env={"STEP": "${{ matrix.arch }}"}),
            env={"TARGET": "${{ ctx.branch }}-build"}, matrix={"arch": ["x64"]}),
        env={"GLOBAL": "1"},
    )
    run(definition, {"branch": "main"}, executor, max_workers=1)

    assert captured["s"] == {"GLOBAL": "1", "TARGET": "main-build", "STEP": "x64"}
    assert fake_executor.commands == ["echo main-build"]


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------

def test_artifact_handoff_between_jobs(tmp_path, fake_executor):
    (tmp_path / "dist").mkdir()
    (tmp_path / "dist" / "app.txt").write_text("v1")
    store = ArtifactStore()

    definition = wf(
        job("build", upload_artifact("dist", "dist", retention_days=1)),
        job("deploy", download_artifact("dist", "out"), needs=["build"]),
    )
    result = run(definition, {}, fake_executor, max_workers=1, artifacts=store, workspace=tmp_path)

    assert result.status is RunStatus.SUCCEEDED
    assert (tmp_path / "out" / "app.txt").read_text() == "v1"
    assert result.instance("build").artifacts == ["dist"]
    assert store.info("dist").producer == "build"


def test_missing_artifact_fails_step_unless_tolerated(tmp_path, fake_executor):
    definition = wf(
        job("strict", download_artifact("nope")),
        job("lenient", download_artifact("nope", continue_on_error=True), sh("after", "echo after")),
    )
    result = run(definition, {}, fake_executor, max_workers=1, workspace=tmp_path)

    assert result.instance("strict").status is JobStatus.FAILED
    assert result.errors[0].kind == "ArtifactNotFound"
    assert result.instance("lenient").status is JobStatus.SUCCEEDED
    assert fake_executor.commands == ["echo after"]


def test_tolerated_step_failure_is_reported(tmp_path, fake_executor):
    definition = wf(
        job("lenient", download_artifact("nope", continue_on_error=True), sh("after", "echo after")),
    )
    result = run(definition, {}, fake_executor, max_workers=1, workspace=tmp_path)

    inst = result.instance("lenient")
    assert inst.status is JobStatus.SUCCEEDED
    assert inst.steps[0]["error"]["kind"] == "ArtifactNotFound"
    assert [(e.instance, e.step, e.kind) for e in result.errors] == [
        ("lenient", "download nope", "ArtifactNotFound"),
    ]
    assert result.errors[0].details["continue_on_error"] is True
    assert result.status is RunStatus.SUCCEEDED


def test_tarball_file_artifact_arrives_as_a_file(tmp_path, fake_executor):
    import tarfile

    (tmp_path / "dist").mkdir()
    (tmp_path / "setup.py").write_text("print('hi')")
    sdist = tmp_path / "dist" / "pkg-1.0.tar.gz"
    with tarfile.open(sdist, "w:gz") as tar:
        tar.add(tmp_path / "setup.py", arcname="pkg-1.0/setup.py")

    definition = wf(
        job("package", upload_artifact("sdist", "dist/pkg-1.0.tar.gz")),
        job("publish", download_artifact("sdist", "upload/pkg-1.0.tar.gz"), needs=["package"]),
    )
    result = run(definition, {}, fake_executor, max_workers=1, workspace=tmp_path)

    assert result.status is RunStatus.SUCCEEDED
    received = tmp_path / "upload" / "pkg-1.0.tar.gz"
    assert received.is_file()
    assert received.read_bytes() == sdist.read_bytes()


def test_expired_artifacts_are_evicted_at_end_of_run(tmp_path, fake_executor):
    (tmp_path / "report.txt").write_text("r")
    now = [1000.0]
    store = ArtifactStore(clock=lambda: now[0])
    store.put("stale", "earlier-run", b"x", retention=10)
    now[0] = 2000.0

    definition = wf(job("build", upload_artifact("report", "report.txt")))
    run(definition, {}, fake_executor, max_workers=1, artifacts=store, workspace=tmp_path,
        clock=lambda: now[0])

    assert "stale" not in store
    assert "report" in store


# ----------------------------------------------------------------------
# Nested runs
# ----------------------------------------------------------------------

def test_nested_run_outputs_flow_to_parent(fake_executor):
    inner = wf(
        job("version", sh("read", "set value=2.0", id="read"), outputs={"value": "steps.read.outputs.value"}),
        name="inner",
    )
    definition = wf(
        call("release", inner, outputs={"version": "needs.version.outputs.value"}),
        job("announce", sh("x", "echo released ${{ needs.release.outputs.version }}"), needs=["release"]),
    )
    result = run(definition, {}, fake_executor, max_workers=2)

    assert result.status is RunStatus.SUCCEEDED
    assert result.instance("release").outputs == {"version": "2.0"}
    assert "echo released 2.0" in fake_executor.commands


def test_nested_run_failure_fails_parent_job(fake_executor):
    inner = wf(job("broken", sh("x", "exit 4")), name="inner")
    definition = wf(call("sub", inner), job("after", sh("x", "echo after"), needs=["sub"]))
    result = run(definition, {}, fake_executor, max_workers=2)

    assert result.instance("sub").status is JobStatus.FAILED
    assert result.instance("after").status is JobStatus.SKIPPED
    assert result.errors[0].kind == "NestedRunError"
    assert result.status is RunStatus.FAILED


def test_job_with_steps_and_workflow_is_rejected(fake_executor):
    bad = JobSpec(name="x", steps=(sh("s", "echo"),), workflow=wf(job("a", sh("s", "echo"))))
    with pytest.raises(ConfigurationError):
        run(wf(bad), {}, fake_executor)


# ----------------------------------------------------------------------
# Environments
# ----------------------------------------------------------------------

def test_environment_is_rendered_and_visible_to_steps(fake_executor):
    definition = wf(
        job(
            "deploy",
            sh("ship", "echo to ${{ job.environment.name }}; set url=https://${{ matrix.region }}.example.test",
               id="ship"),
            matrix={"region": ["eu"]},
            environment={"name": "staging-${{ matrix.region }}", "url": "${{ steps.ship.outputs.url }}"},
            if_="ctx.branch == 'main'",
        ),
    )
    result = run(definition, {"branch": "main"}, fake_executor, max_workers=1)

    inst = result.instance("deploy (eu)")
    assert inst.status is JobStatus.SUCCEEDED
    assert fake_executor.commands == ["echo to staging-eu; set url=https://eu.example.test"]
    assert inst.environment == {"name": "staging-eu", "url": "https://eu.example.test"}
    assert result.to_dict()["instances"][0]["environment"]["name"] == "staging-eu"


def test_skipped_job_has_no_environment(fake_executor):
    definition = wf(job("deploy", sh("ship", "echo ship"), environment="production", if_="ctx.branch == 'main'"))
    result = run(definition, {"branch": "feature"}, fake_executor, max_workers=1)

    assert result.instance("deploy").status is JobStatus.SKIPPED
    assert result.instance("deploy").environment is None
