"""Error types.

``RunFailure`` and its subclasses describe how a single CLI run ended when it
did not exit cleanly. They are raised at the end of a run's chunk stream,
after the matching ``error`` chunk has already been delivered.

``ServiceError`` subclasses map to HTTP responses.
"""

from __future__ import annotations


class RunFailure(RuntimeError):
    """Base class for abnormal run terminations."""

    kind: str = "run"

    def __init__(self, agent: str, message: str) -> None:
        self.agent = agent
        self.message = message
        super().__init__(message)


class ExitFailure(RunFailure):
    kind = "exit"

    def __init__(self, agent: str, code: int) -> None:
        self.code = code
        super().__init__(agent, f"{agent} process failed with exit code {code}")


class TimeoutFailure(RunFailure):
    kind = "timeout"

    def __init__(self, agent: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(agent, f"{agent} process timed out after {timeout:g}s")


class SpawnFailure(RunFailure):
    kind = "spawn"

    def __init__(self, agent: str, reason: str) -> None:
        self.reason = reason
        super().__init__(agent, f"{agent} process could not be started: {reason}")


class ServiceError(RuntimeError):
    """Base error for service-layer failures that map to HTTP responses."""

    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ConversationNotFoundError(ServiceError):
    status_code = 404
