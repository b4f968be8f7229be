from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Union

from errors import ContextOverflowError, EvaluationError
from runtime_binding import ModelRuntime
from sampling import Sampler
from schemas import FinishReason, GenerationConfig, GenerationResponse

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 0.05


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class RunHandle:
    run_id: int
    seed: int
    cancel_token: CancellationToken = field(default_factory=CancellationToken, compare=False, repr=False)

    def cancel(self) -> None:
        self.cancel_token.cancel()


@dataclass(frozen=True)
class CachedPrefix:
    """Token sequence of the previous run; the first ``evaluated`` tokens are in the runtime context."""

    tokens: tuple[int, ...]
    evaluated: int
    model_version: int


@dataclass
class GenerationState:
    prompt_tokens: list[int]
    generated_tokens: list[int] = field(default_factory=list)
    output: str = ""
    start_time: float = field(default_factory=time.monotonic)
    n_past: int = 0

    @property
    def token_count(self) -> int:
        return len(self.generated_tokens)

    @property
    def tokens(self) -> list[int]:
        return self.prompt_tokens + self.generated_tokens

    def elapsed(self) -> float:
        return time.monotonic() - self.start_time


@dataclass(frozen=True)
class PromptProgress:
    processed: int
    total: int

    @property
    def fraction(self) -> float:
        return self.processed / self.total if self.total else 1.0


@dataclass(frozen=True)
class TokenProgress:
    response: GenerationResponse


SessionEvent = Union[PromptProgress, TokenProgress]
EventSink = Callable[[SessionEvent], None]


def common_prefix_length(a: Sequence[int], b: Sequence[int]) -> int:
    n = 0
    for x, y in zip(a, b):
        if x != y:
            break
        n += 1
    return n


class GenerationSession:
    """
    One generation run against a loaded runtime. Runs synchronously on the
    calling (worker) thread; progress is handed to ``on_event`` after every step.
    """

    def __init__(
        self,
        runtime: ModelRuntime,
        config: GenerationConfig,
        cancel_token: CancellationToken | None = None,
        on_event: EventSink | None = None,
        seed: int | None = None,
        model_version: int = 0,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> None:
        self._runtime = runtime
        self._config = config
        self._cancel = cancel_token or CancellationToken()
        self._on_event = on_event
        self._model_version = model_version
        self._grace_seconds = grace_seconds
        self.sampler = Sampler(config, runtime.vocab_size, runtime.safe_token_ids, seed=seed)

    @property
    def seed(self) -> int:
        return self.sampler.seed

    def _emit(self, event: SessionEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    def _reusable_prefix(self, prompt_tokens: Sequence[int], cached: Optional[CachedPrefix]) -> int:
        if cached is None or cached.model_version != self._model_version:
            return 0
        shared = common_prefix_length(prompt_tokens, cached.tokens)
        # Last shared token is always re-evaluated to produce fresh logits.
        return max(0, min(shared - 1, cached.evaluated))

    def _snapshot(self, state: GenerationState, finish_reason: FinishReason | None) -> GenerationResponse:
        return GenerationResponse(
            prompt=self._config.prompt,
            result=state.output,
            duration=state.elapsed(),
            tokens=state.token_count,
            finish_reason=finish_reason,
            seed=self.seed,
        )

    def _evaluate(self, tokens: Sequence[int], state: GenerationState) -> None:
        if not self._runtime.evaluate(tokens, state.n_past, self._config.thread_count):
            raise EvaluationError(f"Failed to evaluate {len(tokens)} token(s) at position {state.n_past}")
        state.n_past += len(tokens)

    def _ingest_prompt(self, state: GenerationState, reused: int) -> None:
        prompt = state.prompt_tokens
        total = len(prompt)
        for i in range(reused):
            self._emit(PromptProgress(processed=i + 1, total=total))
        state.n_past = reused

        batch_size = self._config.batch_size
        for start in range(reused, total, batch_size):
            batch = prompt[start:start + batch_size]
            self._evaluate(batch, state)
            self._emit(PromptProgress(processed=state.n_past, total=total))

    def run(self, cached_prefix: CachedPrefix | None = None) -> tuple[GenerationResponse, CachedPrefix]:
        cfg = self._config
        runtime = self._runtime

        state = GenerationState(prompt_tokens=list(runtime.tokenize(cfg.prompt)))
        prompt = state.prompt_tokens
        if not prompt:
            raise EvaluationError("Prompt produced no tokens")
        if len(prompt) >= runtime.context_length:
            raise ContextOverflowError(
                f"Prompt is {len(prompt)} tokens but the context holds {runtime.context_length}"
            )
        budget = min(cfg.token_budget, runtime.context_length - len(prompt))
        if budget < cfg.token_budget:
            logger.info(f"Token budget clamped from {cfg.token_budget} to {budget} to fit the context")

        reused = self._reusable_prefix(prompt, cached_prefix)
        logger.info(
            f"Starting generation: {len(prompt)} prompt tokens ({reused} reused), "
            f"budget={budget}, sampler={cfg.sampler_kind.value}, seed={self.seed}"
        )

        echo = runtime.detokenize(prompt) if cfg.echo_prompt else ""
        state.output = echo
        self._ingest_prompt(state, reused)

        finish_reason: FinishReason | None = None
        while state.token_count < budget:
            token = self.sampler.sample(runtime.logits(), state.tokens)
            state.generated_tokens.append(token)
            state.output = echo + runtime.detokenize(state.generated_tokens)
            self._emit(TokenProgress(response=self._snapshot(state, None)))

            if self._cancel.cancelled:
                finish_reason = FinishReason.cancelled
                break
            if token == runtime.eos_token_id:
                finish_reason = FinishReason.end_of_sequence
                break
            if state.token_count >= budget:
                break

            self._evaluate([token], state)
            if self._cancel.cancelled:
                finish_reason = FinishReason.cancelled
                break

        if finish_reason is None:
            finish_reason = FinishReason.token_budget_exhausted

        response = self._snapshot(state, finish_reason)
        logger.info(
            f"Generation finished: reason={finish_reason.value}, tokens={response.tokens}, "
            f"duration={response.duration:.2f}s"
        )
        if self._grace_seconds > 0:
            time.sleep(self._grace_seconds)

        cached = CachedPrefix(
            tokens=tuple(state.tokens),
            evaluated=state.n_past,
            model_version=self._model_version,
        )
        return response, cached
