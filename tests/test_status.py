import pytest

from relayci.model import JobResult, Status
from relayci.status import StatusReporter, aggregate


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([], Status.SUCCESS),
        ([Status.SUCCESS, Status.SKIPPED], Status.SUCCESS),
        ([Status.SKIPPED, Status.SKIPPED], Status.SKIPPED),
        ([Status.SUCCESS, Status.CANCELLED, Status.SKIPPED], Status.CANCELLED),
        ([Status.CANCELLED, Status.FAILURE, Status.SUCCESS], Status.FAILURE),
    ],
)
def test_aggregate(statuses, expected):
    assert aggregate(statuses) is expected


def test_snapshot_progression():
    reporter = StatusReporter("r1", ["a", "b"])
    assert reporter.snapshot().status is Status.PENDING

    reporter.job_started("a")
    snap = reporter.snapshot()
    assert snap.status is Status.RUNNING
    assert snap.jobs == {"a": Status.RUNNING, "b": Status.PENDING}
    assert not snap.terminal

    reporter.job_finished(JobResult("a", Status.SUCCESS, outputs={"v": "1"}))
    reporter.job_skipped("b", "needs not satisfied")
    final = reporter.finalize()
    assert final.terminal
    assert final.status is Status.SUCCESS
    assert final.outputs["a"]["v"] == "1"
    assert final.errors["b"] == "needs not satisfied"


def test_finalize_requires_terminal_jobs():
    reporter = StatusReporter("r1", ["a"])
    reporter.job_started("a")
    with pytest.raises(RuntimeError):
        reporter.finalize()


def test_terminal_status_never_changes():
    reporter = StatusReporter("r1", ["a"])
    reporter.job_finished(JobResult("a", Status.SUCCESS))
    reporter.job_cancelled("a")
    reporter.job_finished(JobResult("a", Status.FAILURE))
    assert reporter.status_of("a") is Status.SUCCESS
    assert reporter.result_of("a").status is Status.SUCCESS


def test_final_snapshot_is_frozen_and_stable():
    reporter = StatusReporter("r1", ["a"])
    reporter.job_finished(JobResult("a", Status.FAILURE, error="boom"))
    first = reporter.finalize()
    assert reporter.snapshot() is first
    assert reporter.finalize() is first
    with pytest.raises(TypeError):
        first.jobs["a"] = Status.SUCCESS


def test_callbacks_fire_once_and_late_registration_fires_immediately():
    reporter = StatusReporter("r1", ["a"])
    seen = []
    reporter.on_complete(seen.append)
    reporter.job_finished(JobResult("a", Status.SUCCESS))
    reporter.finalize()
    reporter.finalize()
    assert len(seen) == 1

    late = []
    reporter.on_complete(late.append)
    assert late == [seen[0]]


def test_failing_callback_does_not_break_finalize():
    reporter = StatusReporter("r1", ["a"])

    def boom(snapshot):
        raise RuntimeError("nope")

    reporter.on_complete(boom)
    reporter.job_finished(JobResult("a", Status.SUCCESS))
    assert reporter.finalize().status is Status.SUCCESS
    assert reporter.wait(0)


def test_cancel_pending_and_abort():
    reporter = StatusReporter("r1", ["a", "b", "c"])
    reporter.job_started("a")
    reporter.job_finished(JobResult("b", Status.SUCCESS))
    assert reporter.cancel_pending("stop") == ["c"]
    final = reporter.abort("internal error")
    assert final.jobs == {"a": Status.FAILURE, "b": Status.SUCCESS, "c": Status.CANCELLED}
    assert final.status is Status.FAILURE


def test_result_breakdown():
    reporter = StatusReporter("r1", ["a", "b"])
    reporter.job_finished(JobResult("a", Status.SUCCESS))
    result = reporter.result()
    assert result.run_id == "r1"
    assert result.statuses == {"a": Status.SUCCESS, "b": Status.PENDING}
