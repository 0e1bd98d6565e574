from __future__ import annotations
import math
from typing import Dict, Optional


class ValidationError(Exception):
    """A transition was attempted with missing or malformed fields.

    ``fields`` maps the dotted field name to a human readable reason so
    the caller can show every problem at once.
    """

    def __init__(self, fields: Dict[str, str]) -> None:
        self.fields = dict(fields)
        names = ", ".join(sorted(self.fields))
        super().__init__(f"invalid or missing: {names}")


class RateLimitError(Exception):
    def __init__(self, wait_ms: float) -> None:
        self.wait_ms = max(0.0, float(wait_ms))
        super().__init__(
            f"rate limit active, retry in {self.retry_after_s} seconds"
        )

    @property
    def retry_after_s(self) -> int:
        return int(math.ceil(self.wait_ms / 1000))


class ExecutionError(Exception):
    """The execution collaborator reported a terminal error step."""

    def __init__(self, message: str, step_name: Optional[str] = None) -> None:
        self.message = message
        self.step_name = step_name
        super().__init__(message)


class StorageError(Exception):
    """Run history could not be read or written. Never leaves a store."""
