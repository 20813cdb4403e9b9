"""Custom exceptions for ReasonFlow."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from reasonflow.reasoning.reasoning_types import ReasoningSession, SessionState


class ReasonFlowError(Exception):
    """Base exception for ReasonFlow."""

    pass


class ConfigException(ReasonFlowError):
    """Raised during configuration issues."""

    pass


class OracleUnavailable(ReasonFlowError):
    """Raised when the semantic oracle times out, fails, or returns garbage.

    Always recovered locally by the heuristic intent classifier.
    """

    pass


class MemoryOverflow(ReasonFlowError):
    """Raised when a memory write would exceed the configured bounds.

    Triggers a forced compression; never fatal to a session.
    """

    def __init__(self, size_bytes: int, item_count: int) -> None:
        self.size_bytes = size_bytes
        self.item_count = item_count
        super().__init__(f"Memory store over bound: {size_bytes} bytes, {item_count} items")


class CacheCorruption(ReasonFlowError):
    """Raised when a cache entry fails its checksum. Treated as a miss."""

    def __init__(self, fingerprint: str) -> None:
        self.fingerprint = fingerprint
        super().__init__(f"Cache entry corrupted: {fingerprint[:16]}")


class InvalidTransition(ReasonFlowError):
    """Raised when a session is moved out of state-machine order."""

    def __init__(self, current: SessionState, target: SessionState) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid session transition: {current.value} -> {target.value}")


class SessionNotFoundError(ReasonFlowError):
    """Raised when a session ID is not found in the history."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class PipelineFailure(ReasonFlowError):
    """A session-ending failure surfaced to the caller.

    Carries the failed session and the last successfully completed stage
    so callers can tell how far processing got.
    """

    kind = "pipeline_failure"

    def __init__(
        self,
        message: str,
        session: ReasoningSession | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize pipeline failure.

        Args:
            message: Human-readable error message.
            session: Session that failed (attached by the coordinator).
            details: Optional dictionary with diagnostic details.

        """
        self.message = message
        self.session = session
        self.details = details or {}
        super().__init__(message)

    @property
    def last_stage(self) -> SessionState | None:
        """Last stage the session completed before failing."""
        if self.session is None:
            return None
        return self.session.last_completed_stage

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of the error.

        """
        return {
            "error": True,
            "kind": self.kind,
            "message": self.message,
            "session_id": self.session.id if self.session else None,
            "last_stage": self.last_stage.value if self.last_stage else None,
            "details": self.details,
        }


class NoInferenceAvailable(PipelineFailure):
    """Raised when every enabled inference approach failed."""

    kind = "no_inference_available"


class NoViableSolution(PipelineFailure):
    """Raised when no candidate solution survives to the evaluator."""

    kind = "no_viable_solution"


class SessionCancelled(PipelineFailure):
    """Raised when a session is cancelled or exceeds its deadline."""

    kind = "session_cancelled"
