# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-cell reporting
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Malformed job graph. Raised before any cell is dispatched."""

    def __init__(self, message: str, *, job: str = "", **details):
        super().__init__(kind="configuration_error", job=job, step=None, message=message, details=details)


class ProvisionFailure(CIError):
    """Environment or toolchain setup failed for a cell."""

    def __init__(self, message: str, *, job: str = "", step: str | None = None, **details):
        super().__init__(kind="provision_failure", job=job, step=step, message=message, details=details)


class CacheFailure(CIError):
    """Cache restore/save failed. Logged, never fails a cell."""

    def __init__(self, message: str, *, key: str = "", **details):
        super().__init__(kind="cache_failure", job="", step=None, message=message, details={"key": key, **details})


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class EventPayloadError(ValueError):
    """Raised when a raw trigger payload cannot be parsed into an Event."""
