# ═══════════════════════════════════════════════════════════════════════════════
# PART 0: ERROR TAXONOMY
# Design: I1 (Systems Architect) | Implementation: I1 (Systems Architect)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I1: "Isolate at the smallest independent unit. A broken source loses its own
value for one tick. A mismatched edge loses one dispatch. Only the engine can
take the whole run down, because then every published view is suspect."
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class BlockflowError(Exception):
    """Base class for all blockflow errors."""
    pass


class SourceGenerationError(BlockflowError):
    """Raised (and isolated) when one data source fails inside execute()."""

    def __init__(self, source_id: str, cause: BaseException):
        super().__init__(f"Source {source_id} failed: {cause}")
        self.source_id = source_id
        self.cause = cause


class EngineStepFailure(BlockflowError):
    """The engine step or state pull failed. Fatal for the current run."""

    def __init__(self, step: int, cause: BaseException):
        super().__init__(f"Tick {step} failed: {cause}")
        self.step = step
        self.cause = cause


class MalformedTraceData(BlockflowError):
    """An engine state entry for a handle is missing or unreadable."""
    pass


class ValidationError(BlockflowError):
    """A parameter edit cannot be applied (e.g. a required field is absent)."""
    pass


class StaleHandleError(BlockflowError):
    """An engine handle was used after its block was removed."""
    pass


class PersistenceError(BlockflowError):
    """Base class for network save/load errors."""
    pass


class NetworkFormatError(PersistenceError):
    """Raised when a network file does not match the expected layout."""
    pass


@dataclass(frozen=True)
class DispatchMismatch:
    """
    Record of a value that was not forwarded because the target block
    consumes a different kind. Non-fatal, kept on the tick result.
    """
    source_id: str
    source_kind: str
    target_node: str
    target_kind: Optional[str]

    def describe(self) -> str:
        return (
            f"{self.source_kind} value from {self.source_id} not forwarded to "
            f"{self.target_node} (consumes {self.target_kind or 'nothing'})"
        )
