from __future__ import annotations


class PlaygroundError(Exception):
    """Base class for failures surfaced by the generation core."""

    kind = "playground_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ModelLoadError(PlaygroundError):
    """Model path missing, unreadable or incompatible. The supervisor returns to missing-model."""

    kind = "model_load_failed"


class EvaluationError(PlaygroundError):
    """The runtime binding rejected a batch. Fatal to the run, not to the model."""

    kind = "evaluation_failed"


class ContextOverflowError(EvaluationError):
    kind = "context_overflow"


class ReentrantRunError(PlaygroundError):
    """A run was requested while another one is still active."""

    kind = "invalid_reentry"


class ModelNotLoadedError(PlaygroundError):
    kind = "model_not_loaded"


class LoadInProgressError(PlaygroundError):
    kind = "load_in_progress"
