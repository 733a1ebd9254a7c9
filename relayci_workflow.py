# relayci_workflow.py
# Workflow for relayci itself: tests on every change, docs build + deploy
# only when docs or sources change.
from __future__ import annotations

from relayci import (
    concurrency,
    deploy_docs,
    input_,
    job,
    matrix,
    on_dispatch,
    on_pull_request,
    on_push,
    sh,
    stub,
    wf,
)

SOURCE_PATHS = ["src/**", "tests/**", "pyproject.toml", "relayci_workflow.py"]
DOCS_PATHS = ["docs/**", "README.md", "src/**/*.py"]


def workflow():
    return wf(
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
            timeout_minutes=5,
        ),

        matrix(py=["3.10", "3.11", "3.12"]).jobs(
            lambda v: job(
                f"test-py{v['py']}",
                sh("Install package", f"uv venv -p {v['py']} .venv-{v['py']} && "
                                      f"uv pip install -p .venv-{v['py']} -e '.[test]'"),
                sh("Run pytest", f".venv-{v['py']}/bin/pytest -q"),
                needs=["lint"],
                cache_keys=[f"venv-{v['py']}-${{{{ hashFiles('pyproject.toml') }}}}"],
                cache_to=f"venv-{v['py']}-${{{{ hashFiles('pyproject.toml') }}}}",
                cache_paths=[f".venv-{v['py']}/**"],
                timeout_minutes=15,
            )
        ),

        job(
            "build-docs",
            sh("Build docs", "mkdocs build --strict --site-dir site", id="build"),
            sh(
                "Record size",
                'echo "size=$(du -sk site | cut -f1)" >> "$RELAYCI_OUTPUT"',
                id="size",
            ),
            needs=["lint"],
            outputs={"site_kb": "${{ steps.size.outputs.size }}"},
            timeout_minutes=10,
        ),

        job(
            "deploy-docs",
            deploy_docs("Deploy docs", path="site", channel="${{ env.DOCS_CHANNEL }}", target="docs"),
            needs=["build-docs"],
            if_="run.repository_owner == 'relayci' && inputs.deploy",
            timeout_minutes=5,
        ),

        # placeholder until the docs site has a link checker
        stub("check-links", needs=["build-docs"]),

        name="ci",
        on=[
            on_push(branches=["main"], paths=SOURCE_PATHS + DOCS_PATHS),
            on_pull_request(paths=SOURCE_PATHS + DOCS_PATHS, paths_ignore=["**/*.md"]),
            on_dispatch(),
        ],
        concurrency=concurrency("${{ run.workflow }}-${{ run.ref_slug }}", cancel_in_progress=True),
        env={
            "DOCS_CHANNEL": "${{ run.event == 'pull_request' && 'preview' || 'live' }}",
            "PYTHONUNBUFFERED": "1",
        },
        inputs=[input_("deploy", default=True)],
    )
