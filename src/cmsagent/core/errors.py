from __future__ import annotations


class AgentError(RuntimeError):
    """Base class for failures the engine surfaces to its caller."""


class ModelCallError(AgentError):
    """The language-model collaborator failed after its own retries."""


class CheckpointError(AgentError):
    """A checkpoint could not be written or read."""


class CheckpointNotFoundError(CheckpointError, LookupError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"no checkpoint for session '{session_id}'")
        self.session_id = session_id


class UnknownModeError(AgentError, ValueError):
    def __init__(self, mode: str, available: list[str]) -> None:
        super().__init__(f"Unknown mode '{mode}'. Available modes: {', '.join(available)}")
        self.mode = mode
