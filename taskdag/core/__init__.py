"""Core module - Orchestrator, session state, configuration and errors."""

from taskdag.core.config import Settings, clear_settings_cache, get_settings
from taskdag.core.exceptions import ExitCode, TaskDagError
from taskdag.core.orchestrator import DecompositionOrchestrator, DecompositionResult
from taskdag.core.state import DecompositionSession, Phase, SessionCheckpointer, SessionStatus

__all__ = [
    "DecompositionOrchestrator",
    "DecompositionResult",
    "DecompositionSession",
    "ExitCode",
    "Phase",
    "SessionCheckpointer",
    "SessionStatus",
    "Settings",
    "TaskDagError",
    "clear_settings_cache",
    "get_settings",
]
