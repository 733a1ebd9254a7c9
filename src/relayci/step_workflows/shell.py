# step_workflows/shell.py
from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Tuple

from ..errors import CancellationError, StepFailure, StepTimeout

if TYPE_CHECKING:
    from ..executor import StepContext


# seconds between cancellation checks while a command runs
_POLL = 0.1


def _kill(proc: subprocess.Popen) -> None:
    # the command runs in its own session; take down the whole group
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass  # already gone
    proc.communicate()


def _communicate(ctx: "StepContext", proc: subprocess.Popen) -> Tuple[str, str]:
    while True:
        try:
            return proc.communicate(timeout=_POLL)
        except subprocess.TimeoutExpired:
            pass
        if ctx.cancelled():
            _kill(proc)
            raise CancellationError(message=ctx.token.reason or "run cancelled", job=ctx.job_name, step=ctx.step.name)
        if ctx.deadline is not None and time.monotonic() >= ctx.deadline:
            _kill(proc)
            raise StepTimeout(
                message=f"timed out after {ctx.timeout_budget()}s",
                job=ctx.job_name,
                step=ctx.step.name,
            )


def _parse_kv_file(path: Path) -> Dict[str, str]:
    """
    Parse key=value lines written by a step. Multi-line values use the
    heredoc form:
        name<<EOF
        line 1
        line 2
        EOF
    """
    out: Dict[str, str] = {}
    if not path.exists():
        return out
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delim = line.split("<<", 1)
            buf = []
            while i < len(lines) and lines[i] != delim:
                buf.append(lines[i])
                i += 1
            i += 1  # delimiter
            out[key.strip()] = "\n".join(buf)
        elif "=" in line:
            key, value = line.split("=", 1)
            out[key.strip()] = value
    return out


def run_step(ctx: "StepContext") -> Dict[str, str]:
    """
    Run a shell step. The step may write outputs to $RELAYCI_OUTPUT and
    export env vars for later steps through $RELAYCI_ENV.
    """
    step = ctx.step
    if not ctx.run:
        raise StepFailure(message="shell step has no command", job=ctx.job_name, step=step.name)

    cwd = (ctx.workspace / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise StepFailure(message=f"cwd not found: {cwd}", job=ctx.job_name, step=step.name)

    with tempfile.TemporaryDirectory(prefix="relayci-step-") as tmp:
        output_file = Path(tmp) / "output"
        env_file = Path(tmp) / "env"
        output_file.touch()
        env_file.touch()

        env = os.environ.copy()
        env.update(ctx.env)
        env["RELAYCI_OUTPUT"] = str(output_file)
        env["RELAYCI_ENV"] = str(env_file)
        env["RELAYCI_WORKSPACE"] = str(ctx.workspace)

        proc = subprocess.Popen(
            ctx.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,  # so you can show output on failure
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        stdout, stderr = _communicate(ctx, proc)

        ctx.log_output(stdout, stderr)

        if proc.returncode != 0:
            tail = (stderr or stdout or "").strip()[-4000:]
            raise StepFailure(
                message=f"command failed (exit={proc.returncode}): {ctx.run}",
                job=ctx.job_name,
                step=step.name,
                exit_code=proc.returncode,
                details={"output": tail} if tail else {},
            )

        ctx.exported_env.update(_parse_kv_file(env_file))
        return _parse_kv_file(output_file)
