import json

import pytest

from relayci.codec import job_from_dict, job_to_dict, snapshot_to_dict, workflow_from_dict, workflow_to_dict
from relayci.dsl import (
    concurrency,
    deploy_docs,
    docker_build,
    input_,
    job,
    on_dispatch,
    on_pull_request,
    on_push,
    sh,
    stub,
    wf,
)
from relayci.errors import ConfigurationError
from relayci.model import EventKind, JobResult, Status
from relayci.status import StatusReporter


def _docs_workflow():
    return wf(
        job(
            "build-docs-book",
            sh("Build book", 'mdbook build book --dest-dir "$(pwd)"/target/book', id="book"),
            deploy_docs("Deploy", path="target/book", channel="${{ env.CHANNEL }}", target="docs-book",
                        if_="run.repository_owner == 'relayci'"),
            timeout_minutes=5,
            cache_keys=["book-${{ hashFiles('book/**') }}"],
            cache_to="book-${{ hashFiles('book/**') }}",
            cache_paths=["target/book"],
        ),
        job(
            "build-image",
            docker_build("image", tags=["r/app:${{ run.sha }}"], build_args={"FEATURES": "default"}),
            needs=["build-docs-book"],
            continue_on_error=True,
        ),
        stub("links", needs=["build-docs-book"]),
        name="docs",
        on=[on_push(branches=["main"], paths=["book/**"]), on_pull_request(paths_ignore=["**/*.md"]), on_dispatch()],
        concurrency=concurrency("docs-${{ run.ref_slug }}", cancel_in_progress=True),
        env={"CHANNEL": "${{ run.event == 'pull_request' && 'preview' || 'live' }}"},
        inputs=[input_("channel"), input_("force", default=False, required=True)],
        trigger_priority=[EventKind.PUSH, EventKind.MANUAL],
    )


def test_workflow_survives_json_round_trip():
    original = _docs_workflow()
    wire = json.loads(json.dumps(workflow_to_dict(original)))
    assert workflow_from_dict(wire) == original


def test_job_dict_omits_unset_fields():
    d = job_to_dict(job("a", sh("s", "true")))
    assert d == {
        "name": "a",
        "steps": [{"name": "s", "kind": "shell", "run": "true"}],
        "needs": [],
        "env": {},
    }
    assert job_from_dict(d) == job("a", sh("s", "true"))


def test_malformed_documents():
    with pytest.raises(ConfigurationError):
        workflow_from_dict({"jobs": []})
    with pytest.raises(ConfigurationError):
        workflow_from_dict({"name": "w", "on": [{"event": "tag_push"}]})
    with pytest.raises(ConfigurationError):
        workflow_from_dict({"name": "w", "jobs": [{"steps": []}]})


def test_snapshot_to_dict():
    reporter = StatusReporter("r1", ["a", "b"])
    reporter.job_finished(JobResult("a", Status.SUCCESS, outputs={"url": "https://x"}))
    reporter.job_finished(JobResult("b", Status.FAILURE, error="exit 1"))
    d = snapshot_to_dict(reporter.finalize())
    assert d["run_id"] == "r1"
    assert d["status"] == "failure"
    assert d["terminal"] is True
    assert d["jobs"] == {"a": "success", "b": "failure"}
    assert d["errors"] == {"b": "exit 1"}
    assert d["outputs"] == {"a": {"url": "https://x"}}
    json.dumps(d)
