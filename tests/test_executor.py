import threading
import time

import pytest

from relayci.backends import Backends
from relayci.cache import CacheResolver, LocalCacheBackend
from relayci.dsl import deploy_docs, docker_build, job, noop, sh, stub
from relayci.executor import CancellationToken, JobExecutor
from relayci.model import Status

RUN_CTX = {"run": {"ref_slug": "main", "sha": "0123456789abcdef", "event": "push"}, "env": {}}


@pytest.fixture
def ws(tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    return workspace


def test_steps_run_in_order_and_outputs_flow(ws):
    j = job(
        "build",
        sh("produce", 'echo "greeting=hi" >> "$RELAYCI_OUTPUT"', id="g"),
        sh("consume", 'test "${{ steps.g.outputs.greeting }}" = hi'),
        outputs={"msg": "${{ steps.g.outputs.greeting }}-${{ run.ref_slug }}"},
    )
    result = JobExecutor(ws).execute(j, RUN_CTX)
    assert result.status is Status.SUCCESS
    assert [s.status for s in result.steps] == [Status.SUCCESS, Status.SUCCESS]
    assert result.steps[0].outputs == {"greeting": "hi"}
    assert result.outputs == {"msg": "hi-main"}


def test_exported_env_and_multiline_outputs(ws):
    j = job(
        "env",
        sh("export", 'echo "FOO=bar" >> "$RELAYCI_ENV"'),
        sh("use", 'test "$FOO" = bar'),
        sh("notes", "printf 'notes<<EOF\\nline1\\nline2\\nEOF\\n' >> \"$RELAYCI_OUTPUT\"", id="n"),
        outputs={"notes": "${{ steps.n.outputs.notes }}"},
    )
    result = JobExecutor(ws).execute(j, RUN_CTX)
    assert result.status is Status.SUCCESS, result.error
    assert result.outputs["notes"] == "line1\nline2"


def test_job_and_step_env_are_rendered(ws):
    j = job(
        "env",
        sh("check", 'test "$SLUG" = main && test "$STEP_ONLY" = yes', env={"STEP_ONLY": "yes"}),
        env={"SLUG": "${{ run.ref_slug }}"},
    )
    assert JobExecutor(ws).execute(j, RUN_CTX).status is Status.SUCCESS


def test_failure_skips_later_steps_unless_status_function(ws):
    j = job(
        "test",
        sh("fails", "exit 3"),
        sh("later", "true"),
        sh("cleanup", "true", if_="always()"),
        sh("report", "true", if_="failure()"),
        sh("only-on-success", "true", if_="success()"),
    )
    result = JobExecutor(ws).execute(j, RUN_CTX)
    assert result.status is Status.FAILURE
    assert [s.status for s in result.steps] == [
        Status.FAILURE,
        Status.SKIPPED,
        Status.SUCCESS,
        Status.SUCCESS,
        Status.SKIPPED,
    ]
    assert "exit=3" in result.error


def test_false_condition_skips_step(ws):
    j = job("cond", sh("never", "exit 1", if_="run.event == 'pull_request'"), sh("ok", "true"))
    result = JobExecutor(ws).execute(j, RUN_CTX)
    assert result.status is Status.SUCCESS
    assert result.steps[0].status is Status.SKIPPED


def test_step_continue_on_error(ws):
    j = job(
        "lenient",
        sh("flaky", "exit 1", id="flaky", continue_on_error=True),
        sh("after", 'test "${{ steps.flaky.outcome }}" = failure && test "${{ steps.flaky.conclusion }}" = success'),
    )
    result = JobExecutor(ws).execute(j, RUN_CTX)
    assert result.status is Status.SUCCESS
    assert result.steps[0].status is Status.FAILURE
    assert result.steps[0].continued
    assert result.steps[1].status is Status.SUCCESS


def test_job_continue_on_error_keeps_error(ws):
    j = job("optional", sh("fails", "exit 1"), continue_on_error=True)
    result = JobExecutor(ws).execute(j, RUN_CTX)
    assert result.status is Status.SUCCESS
    assert result.error


def test_timeout_fails_job(ws):
    j = job("slow", sh("sleep", "sleep 5"), sh("after", "true"))
    j.timeout = 0.5
    result = JobExecutor(ws).execute(j, RUN_CTX)
    assert result.status is Status.FAILURE
    assert "timed out" in result.error
    assert result.steps[1].status is Status.SKIPPED


def test_timeout_is_not_softened_by_continue_on_error(ws):
    j = job("slow", sh("sleep", "sleep 5", continue_on_error=True))
    j.timeout = 0.5
    assert JobExecutor(ws).execute(j, RUN_CTX).status is Status.FAILURE


def test_disabled_job_succeeds_without_steps(ws):
    result = JobExecutor(ws).execute(stub("placeholder"), RUN_CTX)
    assert result.status is Status.SUCCESS
    assert result.steps == []


def test_cancelled_token(ws):
    token = CancellationToken()
    token.cancel("superseded")
    result = JobExecutor(ws).execute(job("x", noop("n")), RUN_CTX, token)
    assert result.status is Status.CANCELLED
    assert result.error == "superseded"


def test_bad_expression_fails_step(ws):
    j = job("x", sh("bad", "echo ${{ fromJSON('nope') }}"))
    result = JobExecutor(ws).execute(j, RUN_CTX)
    assert result.status is Status.FAILURE
    assert result.steps[0].status is Status.FAILURE


def test_docker_build_through_backend(ws, fake_build):
    j = job(
        "image",
        docker_build(
            "build",
            tags=["registry.example/app:${{ run.sha }}"],
            build_args={"SHORT_SHA": "${{ run.sha }}"},
            cache_from=["type=registry,ref=registry.example/app:cache"],
            id="img",
        ),
        outputs={"digest": "${{ steps.img.outputs.digest }}"},
    )
    result = JobExecutor(ws, backends=Backends(build=fake_build)).execute(j, RUN_CTX)
    assert result.status is Status.SUCCESS, result.error
    assert result.outputs == {"digest": "sha256:feedface"}
    call = fake_build.calls[0]
    assert call["tags"] == ["registry.example/app:0123456789abcdef"]
    assert call["build_args"] == {"SHORT_SHA": "0123456789abcdef"}
    assert call["push"] is True
    assert call["dockerfile"] == "Dockerfile"


def test_docker_build_without_backend_fails(ws):
    j = job("image", docker_build("build", tags=["x:1"]))
    result = JobExecutor(ws).execute(j, RUN_CTX)
    assert result.status is Status.FAILURE
    assert "no container build backend" in result.error


def test_deploy_through_target(ws, fake_deploy):
    (ws / "site").mkdir()
    j = job(
        "docs",
        deploy_docs("deploy", path="site", channel="${{ run.event == 'push' && 'live' || 'preview' }}", target="docs-book", id="d"),
        outputs={"url": "${{ steps.d.outputs.url }}"},
    )
    result = JobExecutor(ws, backends=Backends(deploy=fake_deploy)).execute(j, RUN_CTX)
    assert result.status is Status.SUCCESS, result.error
    assert result.outputs["url"] == "https://docs-book--live.example.app"
    assert fake_deploy.calls[0][1:] == ("live", "docs-book")


def test_cache_saved_then_restored(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "deps.lock").write_text("1")
    cache = CacheResolver(LocalCacheBackend(tmp_path / "cache"))
    key = "deps-${{ hashFiles('deps.lock') }}"

    def make_job(cmd):
        return job("deps", sh("install", cmd), cache_keys=[key], cache_to=key, cache_paths=["vendor"])

    executor = JobExecutor(ws, cache=cache)
    first = executor.execute(make_job("mkdir -p vendor && echo cached > vendor/lib.txt"), RUN_CTX)
    assert first.status is Status.SUCCESS
    assert first.cache_hit is None

    (ws / "vendor" / "lib.txt").unlink()
    second = executor.execute(make_job("test -f vendor/lib.txt"), RUN_CTX)
    assert second.status is Status.SUCCESS, second.error
    assert second.cache_hit is not None
    assert second.cache_hit.startswith("deps-")


def test_cancel_kills_running_step(ws):
    token = CancellationToken()
    timer = threading.Timer(0.3, token.cancel, args=("superseded by run 9",))
    timer.start()
    started = time.monotonic()
    result = JobExecutor(ws).execute(job("slow", sh("sleep", "sleep 30"), sh("after", "true")), RUN_CTX, token)
    timer.join()
    assert time.monotonic() - started < 10
    assert result.status is Status.CANCELLED
    assert [s.status for s in result.steps] == [Status.CANCELLED, Status.CANCELLED]
    assert result.error == "superseded by run 9"
