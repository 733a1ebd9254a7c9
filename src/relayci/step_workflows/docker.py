# step_workflows/docker.py
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List

from ..errors import ExternalBackendError, StepFailure

if TYPE_CHECKING:
    from ..executor import StepContext


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        # multi-line strings: one entry per non-empty line
        return [line.strip() for line in value.splitlines() if line.strip()]
    return [str(v) for v in value if str(v).strip()]


def _as_mapping(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    out: Dict[str, str] = {}
    for line in _as_list(value):
        if "=" in line:
            k, v = line.split("=", 1)
            out[k.strip()] = v.strip()
    return out


def _flag(value: Any, default: bool) -> bool:
    # rendered templates hand us "true"/"false" strings
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def run_step(ctx: "StepContext") -> Dict[str, str]:
    """Build (and push) a container image through the build backend."""
    step = ctx.step
    backend = ctx.backends.build
    if backend is None:
        raise ExternalBackendError(
            message="no container build backend configured",
            job=ctx.job_name,
            step=step.name,
            backend="build",
        )

    inputs = ctx.inputs
    dockerfile = inputs.get("file") or "Dockerfile"
    tags = _as_list(inputs.get("tags"))
    push = _flag(inputs.get("push"), True)
    if push and not tags:
        raise StepFailure(message="push requested but no tags given", job=ctx.job_name, step=step.name)

    try:
        result = backend.build(
            str((ctx.workspace / (inputs.get("context") or ".")).resolve()),
            str(dockerfile),
            inputs.get("target") or None,
            _as_mapping(inputs.get("build_args")),
            tags,
            _as_list(inputs.get("cache_from")),
            inputs.get("cache_to") or None,
            push=push,
            no_cache=_flag(inputs.get("no_cache"), False),
            timeout=ctx.remaining(),
        )
    except ExternalBackendError as e:
        e.job = e.job or ctx.job_name
        e.step = e.step or step.name
        raise

    return {"digest": result.digest, "tags": ",".join(result.pushed_tags)}
