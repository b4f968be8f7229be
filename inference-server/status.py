from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from errors import PlaygroundError
from generation import RunHandle
from schemas import FailureInfo, GenerationResponse, StatusResponse
from version_tracker import VersionState


@dataclass(frozen=True)
class GenerationFailure:
    """Structured error value carried by the status channel."""

    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "GenerationFailure":
        if isinstance(exc, PlaygroundError):
            return cls(kind=exc.kind, message=exc.message)
        return cls(kind="internal_error", message=f"{type(exc).__name__}: {exc}")


@dataclass(frozen=True)
class MissingModel:
    error: Optional[GenerationFailure] = None
    name = "missing_model"


@dataclass(frozen=True)
class Loading:
    progress: float = 0.0
    name = "loading"


@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class Running:
    handle: RunHandle
    prompt_progress: float = 0.0
    name = "running"


@dataclass(frozen=True)
class Streaming:
    handle: RunHandle
    partial: GenerationResponse
    name = "streaming"


@dataclass(frozen=True)
class Completed:
    response: GenerationResponse
    name = "completed"


@dataclass(frozen=True)
class Failed:
    failure: GenerationFailure
    name = "failed"


Status = Union[MissingModel, Loading, Idle, Running, Streaming, Completed, Failed]

TERMINAL_STATES = (Completed, Failed)
ACTIVE_RUN_STATES = (Running, Streaming)


def to_status_response(
    status: Status,
    version: VersionState,
    context_length: int | None = None,
    vocab_size: int | None = None,
) -> StatusResponse:
    out = StatusResponse(
        state=status.name,
        model_version=version.model_version,
        model_path=version.model_path,
        context_length=context_length,
        vocab_size=vocab_size,
    )
    if isinstance(status, Loading):
        out.load_progress = status.progress
    elif isinstance(status, Running):
        out.run_id = status.handle.run_id
        out.prompt_progress = status.prompt_progress
    elif isinstance(status, Streaming):
        out.run_id = status.handle.run_id
        out.prompt_progress = 1.0
        out.response = status.partial
    elif isinstance(status, Completed):
        out.response = status.response
    elif isinstance(status, Failed):
        out.error = FailureInfo(kind=status.failure.kind, message=status.failure.message)
    elif isinstance(status, MissingModel) and status.error is not None:
        out.error = FailureInfo(kind=status.error.kind, message=status.error.message)
    return out
