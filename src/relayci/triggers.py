# triggers.py
from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from .errors import ConfigurationError
from .model import EventKind, Trigger, TriggerEvent, Workflow
from .paths import matches, matches_any, validate_globs


def validate_trigger(trigger: Trigger) -> None:
    """Compile every glob the trigger carries. Bad globs are fatal at load time."""
    validate_globs(trigger.branches)
    validate_globs(trigger.paths)
    validate_globs(trigger.paths_ignore)
    if trigger.event is EventKind.SCHEDULE and not trigger.cron:
        raise ConfigurationError(message="schedule trigger needs a cron expression")
    if trigger.event is not EventKind.SCHEDULE and trigger.cron:
        raise ConfigurationError(
            message=f"cron is only valid on schedule triggers (got {trigger.event.value})"
        )


def _branch_of(event: TriggerEvent) -> str:
    # pull requests filter on the branch they target
    if event.kind is EventKind.PULL_REQUEST and event.base_ref:
        base = event.base_ref
        return base[len("refs/heads/"):] if base.startswith("refs/heads/") else base
    return event.ref_name


def accepts(trigger: Trigger, event: TriggerEvent) -> bool:
    if trigger.event is not event.kind:
        return False

    if trigger.cron is not None:
        # the external timer says which schedule fired; no cron in payload = any
        fired = event.payload.get("schedule")
        if fired is not None and fired != trigger.cron:
            return False

    if trigger.branches and not matches_any(_branch_of(event), list(trigger.branches)):
        return False

    return matches(event.changed_files, trigger.paths, trigger.paths_ignore)


def _ordered(workflow: Workflow) -> List[Trigger]:
    """Triggers sorted by the workflow's explicit priority, then declaration order."""
    priority = list(workflow.trigger_priority)
    if not priority:
        return list(workflow.triggers)

    def rank(item: Tuple[int, Trigger]) -> Tuple[int, int]:
        idx, trig = item
        pos = priority.index(trig.event) if trig.event in priority else len(priority)
        return pos, idx

    return [t for _, t in sorted(enumerate(workflow.triggers), key=rank)]


def match_trigger(workflow: Workflow, event: TriggerEvent) -> Optional[Trigger]:
    """
    The trigger that admits this event, or None if the run is suppressed.

    A workflow that declares no triggers accepts every event (returns a
    synthetic trigger for the event's kind).
    """
    if not workflow.triggers:
        return Trigger(event=event.kind)
    for trigger in _ordered(workflow):
        if accepts(trigger, event):
            return trigger
    return None


def select_event(
    workflow: Workflow,
    events: Iterable[TriggerEvent],
) -> Optional[Tuple[Trigger, TriggerEvent]]:
    """
    Pick one event out of several that arrived for the same commit (say a
    schedule tick and a push). Precedence comes only from
    workflow.trigger_priority; without it, the earliest-declared matching
    trigger wins.
    """
    candidates = list(events)
    for trigger in _ordered(workflow) or [None]:
        for event in candidates:
            if trigger is None:
                return Trigger(event=event.kind), event
            if accepts(trigger, event):
                return trigger, event
    return None
