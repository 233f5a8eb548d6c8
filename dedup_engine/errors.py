"""Error taxonomy for the deduplication engine.

Lookup failures (rule, strategy, duplicate, workflow, job) abort only the
operation that needed them. ``severity`` is what a batch job records when it
converts an error into a ``BatchError`` and moves on.
"""

from __future__ import annotations

from typing import Any, Dict


class DedupEngineError(Exception):
    """Base class for all engine errors."""

    severity = "medium"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(message)


class RuleNotFound(DedupEngineError):
    """No active matching rule exists for a record type (or the requested id)."""

    severity = "high"


class DuplicateNotFound(DedupEngineError):
    """A duplicate id is unknown to the store."""


class StrategyNotFound(DedupEngineError):
    """Neither a type-specific nor a universal merge strategy exists."""

    severity = "high"


class WorkflowNotFound(DedupEngineError):
    """A resolution workflow id is unknown."""


class BatchJobNotFound(DedupEngineError):
    """A batch job id is unknown."""


class RecordFieldMissing(DedupEngineError):
    """A configured field is absent from one side of a pair."""

    severity = "low"


class PersistenceFailure(DedupEngineError):
    """The key/value store refused or failed a write."""

    severity = "high"


class MergeFailure(DedupEngineError):
    """Applying a merge strategy failed; the duplicate stays pending."""


class InvalidRuleError(DedupEngineError):
    """A matching rule or merge strategy failed validation."""


class InvalidTransition(DedupEngineError):
    """A duplicate or workflow state change is not allowed."""

    severity = "low"


class ExpressionError(DedupEngineError):
    """A sandboxed expression could not be parsed or evaluated."""
