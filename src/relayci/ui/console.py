"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from relayci.status import RunSnapshot


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def _chatty(self, *lines: str) -> None:
        if not self.quiet:
            self._out(*lines)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._chatty(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        workflow: str,
        trigger: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._chatty(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Workflow: {workflow}",
            f"Trigger: {trigger}",
            f"Jobs: {job_count}",
            "",
        )

    def print_run_suppressed(self, workflow: str, event: str) -> None:
        self._chatty(f"\nRUN SUPPRESSED: {workflow} (no trigger matched {event})")

    def print_run_superseded(self, run_id: str, by: str) -> None:
        self._chatty(f"\nRUN CANCELLED: {run_id} (superseded by {by})")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._chatty(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._chatty(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._chatty(f"[{job}] STEP SKIPPED: {name} ({reason})")

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._chatty(f"[{name}] STATUS: {status}{suffix}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out(*lines)

    def print_cache_hit(self, job: str, key: str) -> None:
        """Print cache hit message."""
        self._chatty(f"[{job}] CACHE: hit ({key})")

    def print_cache_miss(self, job: str, keys: Sequence[str]) -> None:
        """Print cache miss message."""
        self._chatty(f"[{job}] CACHE: miss ({', '.join(keys)})")

    def print_cache_saved(self, job: str, key: str) -> None:
        """Print cache save message."""
        self._chatty(f"[{job}] CACHE: saved ({key})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._chatty(f"\nJOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str) -> None:
        self._chatty(f"JOB CANCELLED: {name}")

    def print_plan(self, stages: Sequence[Sequence[str]], disabled: Sequence[str] = ()) -> None:
        """Print topological stages of a workflow."""
        self._out("\nPLAN")
        for idx, stage in enumerate(stages, start=1):
            names = [f"{n} (stub)" if n in disabled else n for n in stage]
            self._out(f"  Stage {idx}: {', '.join(names)}")

    def print_results(self, snapshot: "RunSnapshot") -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job, status in snapshot.jobs.items():
            lines.append(f"  {job}: {status.value.upper()}")
        run_status = snapshot.status.value.upper()
        lines.append(f"  RUN: {run_status}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._chatty(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
