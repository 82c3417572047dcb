# jobgraph_workflow.py
# Workflow for jobgraph itself: lint, test matrix, package and publish on main
from __future__ import annotations
from jobgraph import wf, job, sh, matrix, upload_artifact, download_artifact

def workflow():
    return wf(
        job(
            "lint",
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
        ),

        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q -k '${{ matrix.suite }}'"),
            needs=["lint"],
            matrix=matrix(suite=["scheduler", "expressions", "cli", "reporting"]),
            timeout=900,
        ),

        job(
            "package",
            sh(
                "Build sdist",
                "python -m build --sdist --outdir dist && echo version=$(git describe --tags --always) >> $JOBGRAPH_OUTPUT",
                id="build",
            ),
            upload_artifact("dist", "dist", retention_days=7),
            needs=["test"],
            outputs={"version": "steps.build.outputs.version"},
        ),

        job(
            "publish",
            download_artifact("dist", "publish/dist"),
            sh("Publish", "echo publishing ${{ needs.package.outputs.version }}; ls publish/dist"),
            needs=["package"],
            if_="ctx.branch == 'main' && ctx.event == 'push'",
            environment="pypi",
        ),

        job(
            "notify-failure",
            sh("Report", "echo 'jobgraph build failed on ${{ ctx.branch }}'"),
            needs=["test", "package"],
            if_="failure()",
        ),
        name="jobgraph",
    )
