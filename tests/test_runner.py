import textwrap

import pytest
from conftest import BlockingExecutor

from relayci.dsl import concurrency, input_, job, noop, on_dispatch, on_push, sh, wf
from relayci.errors import ConfigurationError
from relayci.model import EventKind, Job, Status, Step, TriggerEvent, Workflow
from relayci.runner import Orchestrator, load_workflow, resolve_inputs, run_workflow, validate_workflow


def _push(files=("src/app.py",), ref="refs/heads/main"):
    return TriggerEvent(kind=EventKind.PUSH, ref=ref, sha="abc123", changed_files=frozenset(files))


# ---- loading ----

def test_load_workflow_function(tmp_path):
    path = tmp_path / "ci_workflow.py"
    path.write_text(textwrap.dedent("""
        from relayci import wf, job, noop

        def workflow():
            return wf(job("a", noop("n")), name="ci")
    """))
    loaded = load_workflow(path)
    assert loaded.name == "ci"
    assert [j.name for j in loaded.jobs] == ["a"]


def test_load_workflow_jobs_list_uses_file_stem(tmp_path):
    path = tmp_path / "nightly.py"
    path.write_text(textwrap.dedent("""
        from relayci import job, noop
        JOBS = [job("a", noop("n")), job("b", noop("n"), needs=["a"])]
    """))
    loaded = load_workflow(path)
    assert isinstance(loaded, Workflow)
    assert loaded.name == "nightly"
    assert len(loaded.jobs) == 2


def test_load_workflow_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "missing.py")
    not_py = tmp_path / "workflow.yml"
    not_py.write_text("jobs: {}")
    with pytest.raises(ConfigurationError):
        load_workflow(not_py)
    empty = tmp_path / "empty.py"
    empty.write_text("X = 1\n")
    with pytest.raises(ConfigurationError):
        load_workflow(empty)


# ---- validation ----

def test_validate_rejects_bad_expression_with_context():
    workflow = wf(job("a", sh("s", "true"), if_="run.event =="))
    with pytest.raises(ConfigurationError) as exc:
        validate_workflow(workflow)
    assert exc.value.job == "a"


def test_validate_rejects_bad_step_template():
    workflow = wf(job("a", sh("s", "echo ${{ unknown() }}")))
    with pytest.raises(ConfigurationError) as exc:
        validate_workflow(workflow)
    assert (exc.value.job, exc.value.step) == ("a", "s")


@pytest.mark.parametrize(
    "bad_job",
    [
        Job("a", steps=[Step("s", kind="teleport")]),
        Job("a", steps=[Step("s", kind="shell")]),
        Job("a", steps=[Step("s", run="true", id="x"), Step("t", run="true", id="x")]),
        Job("a", steps=[Step("s", run="true")], cache_to="k"),
        Job("a", steps=[Step("s", run="true")], timeout=0),
    ],
)
def test_validate_rejects_bad_jobs(bad_job):
    with pytest.raises(ConfigurationError):
        validate_workflow(Workflow("w", [bad_job]))


def test_validate_rejects_bad_trigger_glob_and_cycles():
    with pytest.raises(ConfigurationError):
        validate_workflow(wf(job("a", noop("n")), on=[on_push(paths=["[nope"])]))
    with pytest.raises(ConfigurationError):
        validate_workflow(wf(job("a", noop("n"), needs=["b"]), job("b", noop("n"), needs=["a"])))


def test_validate_returns_graph():
    graph = validate_workflow(wf(job("a", noop("n")), job("b", noop("n"), needs=["a"])))
    assert graph.stages() == [["a"], ["b"]]


def test_resolve_inputs():
    workflow = wf(job("a", noop("n")), inputs=[input_("channel", default="live"), input_("version", required=True)])
    event = TriggerEvent(kind=EventKind.MANUAL, inputs={"version": "1.2"})
    assert resolve_inputs(workflow, event) == {"channel": "live", "version": "1.2"}
    with pytest.raises(ConfigurationError):
        resolve_inputs(workflow, TriggerEvent(kind=EventKind.MANUAL))
    with pytest.raises(ConfigurationError):
        resolve_inputs(workflow, TriggerEvent(kind=EventKind.MANUAL, inputs={"version": "1", "extra": "x"}))


def test_inputs_are_only_enforced_for_manual_dispatch(tmp_path):
    workflow = wf(
        job("a", sh("check", 'test -z "${{ inputs.version }}"')),
        on=[on_push(branches=["main"]), on_dispatch()],
        inputs=[input_("version", required=True), input_("channel", default="live")],
    )
    push = TriggerEvent(kind=EventKind.PUSH, ref="refs/heads/main", inputs={"version": "ignored"})
    assert resolve_inputs(workflow, push) == {"version": None, "channel": "live"}

    result = Orchestrator(workflow, workspace=tmp_path).run(_push())
    assert result.status is Status.SUCCESS, result.jobs
    with pytest.raises(ConfigurationError):
        Orchestrator(workflow, workspace=tmp_path).trigger(TriggerEvent(kind=EventKind.MANUAL))


# ---- orchestration ----

def test_run_to_completion(tmp_path):
    workflow = wf(
        job("build", sh("out", 'echo "tag=${{ run.ref_slug }}-${{ inputs.flavor }}" >> "$RELAYCI_OUTPUT"', id="o"),
            outputs={"tag": "${{ steps.o.outputs.tag }}"}),
        job("check", sh("verify", 'test "${{ needs.build.outputs.tag }}" = "main-full"'), needs=["build"]),
        on=[on_push()],
        inputs=[input_("flavor", default="full")],
    )
    seen = []
    result, run = run_workflow(workflow, _push(), workspace=tmp_path, on_complete=[seen.append])
    assert result.status is Status.SUCCESS, result.jobs
    assert result.jobs["build"].outputs == {"tag": "main-full"}
    assert len(seen) == 1
    assert seen[0].terminal
    assert run.snapshot() is seen[0]


def test_workflow_env_is_rendered_and_visible(tmp_path):
    workflow = wf(
        job("a", sh("check", 'test "$CHANNEL" = live')),
        env={"CHANNEL": "${{ run.event == 'pull_request' && 'preview' || 'live' }}"},
    )
    result = Orchestrator(workflow, workspace=tmp_path).run(_push())
    assert result.status is Status.SUCCESS


def test_suppressed_run_is_not_created(tmp_path):
    workflow = wf(job("a", noop("n")), on=[on_push(paths=["src/**"], paths_ignore=["**/*.md"])])
    orch = Orchestrator(workflow, workspace=tmp_path)
    assert orch.trigger(_push(files=["README.md", "docs/x.md"])) is None
    assert orch.run(_push(files=["docs/only.md"])) is None
    assert orch.runs() == []


def test_conditions_see_event_context(tmp_path):
    workflow = wf(
        job("deploy", noop("n"), if_="run.repository_owner == 'relayci'"),
        on=[on_push(), on_dispatch()],
    )
    orch = Orchestrator(workflow, workspace=tmp_path)
    ours = TriggerEvent(kind=EventKind.MANUAL, repository="relayci/relayci")
    fork = TriggerEvent(kind=EventKind.MANUAL, repository="someone/relayci")
    assert orch.run(ours).status is Status.SUCCESS
    assert orch.run(fork).status is Status.SKIPPED


def _grouped(cancel_in_progress):
    return wf(
        job("work", noop("n")),
        on=[on_push()],
        concurrency=concurrency("deploy-${{ run.ref_slug }}", cancel_in_progress=cancel_in_progress),
    )


def test_queued_run_is_superseded_by_newer_run(tmp_path):
    orch = Orchestrator(_grouped(False), workspace=tmp_path)
    executor = BlockingExecutor()
    orch.executor = executor

    first = orch.start(orch.trigger(_push()))
    assert executor.started.wait(5)
    second = orch.start(orch.trigger(_push()))
    third = orch.start(orch.trigger(_push()))
    assert first.concurrency_group == "deploy-main"

    assert second.wait(5)
    assert second.result().status is Status.CANCELLED
    assert second.id not in executor.run_ids

    executor.release.set()
    assert first.wait(5) and third.wait(5)
    assert first.result().status is Status.SUCCESS
    assert third.result().status is Status.SUCCESS
    assert executor.run_ids == [first.id, third.id]


def test_cancel_in_progress_cancels_active_run(tmp_path):
    orch = Orchestrator(_grouped(True), workspace=tmp_path)
    executor = BlockingExecutor()
    orch.executor = executor

    first = orch.start(orch.trigger(_push()))
    assert executor.started.wait(5)
    second = orch.start(orch.trigger(_push()))

    assert first.wait(5)
    assert first.result().status is Status.CANCELLED

    executor.release.set()
    assert second.wait(5)
    assert second.result().status is Status.SUCCESS


def test_different_groups_do_not_interfere(tmp_path):
    orch = Orchestrator(_grouped(True), workspace=tmp_path)
    executor = BlockingExecutor()
    orch.executor = executor

    main = orch.start(orch.trigger(_push()))
    assert executor.started.wait(5)
    feature = orch.start(orch.trigger(_push(ref="refs/heads/feature")))
    executor.release.set()
    assert main.wait(5) and feature.wait(5)
    assert main.result().status is Status.SUCCESS
    assert feature.result().status is Status.SUCCESS


def test_cancel_by_id(tmp_path):
    orch = Orchestrator(wf(job("work", noop("n"))), workspace=tmp_path)
    executor = BlockingExecutor()
    orch.executor = executor

    run = orch.start(orch.trigger(_push()))
    assert executor.started.wait(5)
    assert orch.cancel(run.id)
    assert run.wait(5)
    assert run.result().status is Status.CANCELLED
    assert not orch.cancel(run.id)
    assert not orch.cancel("unknown")
    assert orch.get(run.id) is run
    assert orch.runs() == [run]


def test_invalid_workflow_is_rejected_up_front(tmp_path):
    with pytest.raises(ConfigurationError):
        Orchestrator(wf(job("a", noop("n"), needs=["ghost"])), workspace=tmp_path)


def test_concurrency_group_can_hash_files(tmp_path):
    (tmp_path / "lock.txt").write_text("pinned\n")
    workflow = wf(
        job("work", noop("n")),
        on=[on_push()],
        concurrency=concurrency("deploy-${{ hashFiles('lock.txt') }}"),
    )
    run = Orchestrator(workflow, workspace=tmp_path).trigger(_push())
    assert run.concurrency_group.startswith("deploy-")
    assert len(run.concurrency_group) > len("deploy-")
