# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - status snapshots / webhook payloads
      - debugging without full tracebacks
    """
    message: str
    kind: str = "ci_error"
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class ConfigurationError(CIError):
    """Invalid workflow definition. Fatal at load time, nothing runs."""
    kind: str = "configuration"


@dataclass(eq=False)
class ExpressionError(CIError):
    """An expression parsed fine but could not be evaluated."""
    kind: str = "expression"


@dataclass(eq=False)
class StepFailure(CIError):
    kind: str = "step_failure"
    exit_code: Optional[int] = None


@dataclass(eq=False)
class StepTimeout(StepFailure):
    kind: str = "timeout"


@dataclass(eq=False)
class ExternalBackendError(StepFailure):
    """Build/deploy backend failure. Never retried by the engine."""
    kind: str = "external_backend"
    backend: Optional[str] = None


@dataclass(eq=False)
class CancellationError(CIError):
    kind: str = "cancelled"


@dataclass(eq=False)
class WebhookError(CIError):
    kind: str = "webhook"
