from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class TbwError(Exception):
    """Canonical error type for a failed payout run."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class ConfigError(TbwError):
    """Invalid policy or operator configuration. Raised before any work starts."""


class DataIntegrityError(TbwError):
    """Ledger data the engines cannot trust (missing timestamps, unknown stakes, ...)."""


class CollaboratorError(TbwError):
    """Data store or node API unavailable or returned something unusable."""
