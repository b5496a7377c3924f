"""Define the error kinds raised or returned by the pipeline.

Engine rejections (``NonAdjacentTransition``, ``AlreadyTerminal``,
``ValidationFailed``) are returned as values inside a ``TransitionResult`` and
are never retried. Collaborator failures (``WorkerFailed``, ``StorageError``,
``GitError``, ...) are raised by the adapters and surface through the
orchestrator.
"""

from __future__ import annotations

from typing import Optional

from .constants import EXIT_CODE_INTERRUPTED


class PipelineError(Exception):
    """Base class for every pipeline error; ``code`` is stable for scripting."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_exit_code(self) -> int:
        return 1


class NonAdjacentTransition(PipelineError):
    code = "NON_ADJACENT_TRANSITION"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"non-adjacent transition: {current} -> {target}")


class AlreadyTerminal(PipelineError):
    code = "ALREADY_TERMINAL"

    def __init__(self, state: str = "done") -> None:
        self.state = state
        super().__init__(f"already terminal: item is in state '{state}'")


class ValidationFailed(PipelineError):
    """A target-state precondition was not met by the observed evidence."""

    code = "VALIDATION_FAILED"

    def __init__(self, reason_code: str, reason: str) -> None:
        self.reason_code = reason_code
        self.reason = reason
        super().__init__(reason)


class WorkerFailed(PipelineError):
    code = "WORKER_FAILED"

    def __init__(self, cause: str, *, timed_out: bool = False, exit_status: Optional[int] = None) -> None:
        self.cause = cause
        self.timed_out = timed_out
        self.exit_status = exit_status
        super().__init__(cause)


class IterationBudgetExceeded(PipelineError):
    code = "ITERATION_BUDGET_EXCEEDED"

    def __init__(self, budget: int) -> None:
        self.budget = budget
        super().__init__(f"iteration budget exceeded ({budget})")


class StorageError(PipelineError):
    code = "STORAGE_ERROR"


class ConfigError(PipelineError):
    code = "CONFIG_ERROR"


class GitError(PipelineError):
    code = "GIT_ERROR"


class TemplateError(PipelineError):
    code = "TEMPLATE_ERROR"


class RepoNotFound(PipelineError):
    code = "REPO_NOT_FOUND"


class Interrupted(PipelineError):
    code = "INTERRUPTED"

    def __init__(self, message: str = "operation interrupted") -> None:
        super().__init__(message)

    def to_exit_code(self) -> int:
        return EXIT_CODE_INTERRUPTED
