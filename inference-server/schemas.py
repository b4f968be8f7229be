from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_PROMPT = "### Human: What is the meaning of life?\n### Assistant:"
RANDOM_SEED = -1


class SamplerKind(str, Enum):
    greedy = "greedy"
    classic = "classic"
    mirostat_v1 = "mirostat_v1"
    mirostat_v2 = "mirostat_v2"


class FinishReason(str, Enum):
    end_of_sequence = "end_of_sequence"
    token_budget_exhausted = "token_budget_exhausted"
    cancelled = "cancelled"


class GenerationConfig(BaseModel):
    """Immutable per-run configuration for the local generation loop."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    prompt: str = DEFAULT_PROMPT
    token_budget: int = Field(2048, ge=1)

    temperature: float = Field(0.19, ge=0.0)
    top_k: int = Field(40, ge=0)
    top_p: float = Field(1.0, ge=0.0, le=1.0)
    typical_p: float = Field(1.0, ge=0.0, le=1.0)
    tail_free_z: float = Field(1.0, ge=0.0, le=1.0)

    repeat_penalty: float = Field(1.3, ge=1.0)
    repeat_window: int = Field(64, ge=0)
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    penalize_newline: bool = False

    sampler_kind: SamplerKind = SamplerKind.classic
    mirostat_target_entropy: float = Field(5.0, gt=0.0)
    mirostat_learning_rate: float = Field(0.1, gt=0.0)

    seed: int = Field(RANDOM_SEED, ge=-(2**31), le=2**31 - 1)
    thread_count: int = Field(4, ge=1)
    batch_size: int = Field(32, ge=1)
    echo_prompt: bool = False


class GenerationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    result: str
    duration: float | None = None
    tokens: int = 0
    finish_reason: FinishReason | None = None
    seed: int


class FailureInfo(BaseModel):
    kind: str
    message: str


class LoadModelRequest(BaseModel):
    model_path: str = Field(..., min_length=1)


class LoadModelResponse(BaseModel):
    ok: bool
    requested_model_path: str
    message: str


class GenerateAcceptedResponse(BaseModel):
    run_id: int
    seed: int


class StatusResponse(BaseModel):
    state: str
    model_version: int
    model_path: str | None
    context_length: int | None = None
    vocab_size: int | None = None
    load_progress: float | None = None
    prompt_progress: float | None = None
    run_id: int | None = None
    response: GenerationResponse | None = None
    error: FailureInfo | None = None
