import pytest

from relayci.dsl import job, noop, on_dispatch, on_pull_request, on_push, on_schedule, wf
from relayci.errors import ConfigurationError
from relayci.model import EventKind, Trigger, TriggerEvent
from relayci.triggers import accepts, match_trigger, select_event, validate_trigger


def _push(ref="refs/heads/main", files=()):
    return TriggerEvent(kind=EventKind.PUSH, ref=ref, changed_files=frozenset(files))


def _workflow(*triggers, priority=()):
    return wf(job("a", noop("nothing")), on=list(triggers), trigger_priority=priority)


def test_branch_filter():
    trigger = on_push(branches=["main", "release/*"])
    assert accepts(trigger, _push("refs/heads/main"))
    assert accepts(trigger, _push("refs/heads/release/v1"))
    assert not accepts(trigger, _push("refs/heads/feature/x"))


def test_pull_request_filters_on_target_branch():
    trigger = on_pull_request(branches=["main"])
    event = TriggerEvent(kind=EventKind.PULL_REQUEST, ref="refs/pull/12/merge", base_ref="main")
    assert accepts(trigger, event)
    other = TriggerEvent(kind=EventKind.PULL_REQUEST, ref="refs/pull/12/merge", base_ref="develop")
    assert not accepts(trigger, other)


def test_event_kind_must_match():
    assert not accepts(on_pull_request(), _push())


def test_path_filters_apply():
    trigger = on_push(paths=["book/**", "**/*.rs"], paths_ignore=["**/*.md"])
    assert accepts(trigger, _push(files=["src/lib.rs"]))
    assert not accepts(trigger, _push(files=["book/intro.md"]))
    assert not accepts(trigger, _push(files=["Cargo.lock.txt"]))


def test_schedule_matches_fired_cron():
    trigger = on_schedule("0 3 * * *")
    fired = TriggerEvent(kind=EventKind.SCHEDULE, payload={"schedule": "0 3 * * *"})
    other = TriggerEvent(kind=EventKind.SCHEDULE, payload={"schedule": "0 4 * * *"})
    unspecified = TriggerEvent(kind=EventKind.SCHEDULE)
    assert accepts(trigger, fired)
    assert not accepts(trigger, other)
    assert accepts(trigger, unspecified)


def test_validate_trigger():
    with pytest.raises(ConfigurationError):
        validate_trigger(Trigger(EventKind.SCHEDULE))
    with pytest.raises(ConfigurationError):
        validate_trigger(Trigger(EventKind.PUSH, cron="* * * * *"))
    with pytest.raises(ConfigurationError):
        validate_trigger(on_push(paths=["src/[x"]))
    validate_trigger(on_dispatch())


def test_workflow_without_triggers_accepts_everything():
    trigger = match_trigger(_workflow(), _push())
    assert trigger is not None
    assert trigger.event is EventKind.PUSH


def test_match_trigger_returns_none_when_suppressed():
    workflow = _workflow(on_push(paths_ignore=["**/*.md"]))
    assert match_trigger(workflow, _push(files=["README.md"])) is None


def test_select_event_declaration_order_without_priority():
    workflow = _workflow(on_push(), on_schedule("0 3 * * *"))
    push, tick = _push(), TriggerEvent(kind=EventKind.SCHEDULE)
    trigger, event = select_event(workflow, [tick, push])
    assert trigger.event is EventKind.PUSH
    assert event is push


def test_select_event_honours_explicit_priority():
    workflow = _workflow(
        on_push(),
        on_schedule("0 3 * * *"),
        priority=(EventKind.SCHEDULE, EventKind.PUSH),
    )
    push, tick = _push(), TriggerEvent(kind=EventKind.SCHEDULE)
    trigger, event = select_event(workflow, [push, tick])
    assert trigger.event is EventKind.SCHEDULE
    assert event is tick


def test_select_event_nothing_matches():
    workflow = _workflow(on_pull_request())
    assert select_event(workflow, [_push()]) is None
