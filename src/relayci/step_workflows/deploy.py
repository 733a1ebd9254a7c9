# step_workflows/deploy.py
from __future__ import annotations

from typing import TYPE_CHECKING, Dict

from ..errors import ExternalBackendError, StepFailure

if TYPE_CHECKING:
    from ..executor import StepContext


def run_step(ctx: "StepContext") -> Dict[str, str]:
    """Hand a built documentation site to the deploy target; outputs its url."""
    step = ctx.step
    target = ctx.backends.deploy
    if target is None:
        raise ExternalBackendError(
            message="no deploy target configured",
            job=ctx.job_name,
            step=step.name,
            backend="deploy",
        )

    path = ctx.inputs.get("path")
    if not path:
        raise StepFailure(message="deploy step needs a 'path' input", job=ctx.job_name, step=step.name)
    built = (ctx.workspace / str(path)).resolve()
    if not built.exists():
        raise StepFailure(message=f"built artifact not found: {built}", job=ctx.job_name, step=step.name)

    channel = str(ctx.inputs.get("channel") or "live")
    site = str(ctx.inputs.get("target") or "")

    try:
        url = target.deploy(str(built), channel, site, timeout=ctx.remaining())
    except ExternalBackendError as e:
        e.job = e.job or ctx.job_name
        e.step = e.step or step.name
        raise
    return {"url": url, "channel": channel}
