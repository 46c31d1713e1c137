"""Error taxonomy for the metering core.

Expected outcomes (insufficient credits, invalid transitions, ownership
failures) are returned as values so callers branch on them explicitly.
Exceptions are kept for conditions that must never be silently handled:
ledger invariant violations and datastore failures during job creation.
Execution failures are exceptions too, but they never leave the executor.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class InsufficientCredits:
    required: int
    available: int
    shortfall: int
    code: str = "insufficient_credits"


@dataclass(frozen=True)
class Conflict:
    message: str
    code: str = "conflict"


@dataclass(frozen=True)
class NotFound:
    resource: str
    code: str = "not_found"

    @property
    def message(self) -> str:
        return f"{self.resource} not found"


@dataclass(frozen=True)
class Forbidden:
    message: str = "Access forbidden"
    code: str = "forbidden"


class LedgerInvariantViolation(RuntimeError):
    pass


class JobCreationFailed(RuntimeError):
    pass


class ExecutionFailure(RuntimeError):
    pass


class TransientExecutionFailure(ExecutionFailure):
    pass


class PermanentExecutionFailure(ExecutionFailure):
    pass
