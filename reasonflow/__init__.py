"""ReasonFlow: request-scoped reasoning pipeline with adaptive learning."""

from reasonflow.reasoning.coordinator import SessionCoordinator, build_coordinator
from reasonflow.reasoning.reasoning_types import Outcome, ReasoningSession, SessionState
from reasonflow.utils.cancellation import CancellationToken

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "Outcome",
    "ReasoningSession",
    "SessionCoordinator",
    "SessionState",
    "build_coordinator",
]
