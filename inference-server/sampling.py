"""Next-token selection for the local generation loop.

Penalties run first over the recent history window (with the runtime's safe
tokens exempted), then the configured strategy picks a token:

- greedy: argmax of the raw logits
- classic: top-k -> tail-free -> locally typical -> top-p -> temperature -> draw
- mirostat v1/v2: temperature, then an adaptive cutoff steered towards a target
  surprise (entropy in bits) with a running estimate ``mu`` carried across calls

All filters work on a candidate set and keep at least ``min_keep`` entries.
"""

from __future__ import annotations

import logging
import math
import secrets
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Sequence

import torch

from schemas import RANDOM_SEED, GenerationConfig, SamplerKind

logger = logging.getLogger(__name__)

# Candidates used to estimate the Zipf exponent in mirostat v1.
MIROSTAT_M = 100


@dataclass
class Candidates:
    ids: torch.Tensor
    logits: torch.Tensor
    is_sorted: bool = False

    @classmethod
    def from_logits(cls, logits: torch.Tensor) -> "Candidates":
        return cls(ids=torch.arange(logits.numel(), dtype=torch.long), logits=logits)

    def __len__(self) -> int:
        return int(self.ids.numel())

    def sorted(self) -> "Candidates":
        if self.is_sorted:
            return self
        order = torch.argsort(self.logits, descending=True, stable=True)
        return Candidates(ids=self.ids[order], logits=self.logits[order], is_sorted=True)

    def keep(self, n: int) -> "Candidates":
        return Candidates(ids=self.ids[:n], logits=self.logits[:n], is_sorted=self.is_sorted)

    def probs(self) -> torch.Tensor:
        return torch.softmax(self.logits, dim=0)


def resolve_seed(seed: int) -> int:
    if seed == RANDOM_SEED:
        return secrets.randbits(31)
    return seed


def _first_index(mask: torch.Tensor, default: int) -> int:
    hits = torch.nonzero(mask, as_tuple=False)
    if hits.numel() == 0:
        return default
    return int(hits[0, 0])


def apply_repetition_penalty(logits: torch.Tensor, history: Sequence[int], penalty: float) -> torch.Tensor:
    if not history or penalty == 1.0:
        return logits
    ids = torch.tensor(sorted(set(history)), dtype=torch.long)
    values = logits[ids]
    logits[ids] = torch.where(values > 0, values / penalty, values * penalty)
    return logits


def apply_frequency_presence_penalty(
    logits: torch.Tensor,
    history: Sequence[int],
    frequency_penalty: float,
    presence_penalty: float,
) -> torch.Tensor:
    if not history or (frequency_penalty == 0.0 and presence_penalty == 0.0):
        return logits
    counts = Counter(history)
    ids = torch.tensor(list(counts.keys()), dtype=torch.long)
    occurrences = torch.tensor(list(counts.values()), dtype=logits.dtype)
    logits[ids] -= occurrences * frequency_penalty + (occurrences > 0).to(logits.dtype) * presence_penalty
    return logits


def top_k(candidates: Candidates, k: int, min_keep: int = 1) -> Candidates:
    n = len(candidates)
    if k <= 0:
        k = n
    k = min(max(k, min_keep), n)
    return candidates.sorted().keep(k)


def tail_free(candidates: Candidates, z: float, min_keep: int = 1) -> Candidates:
    n = len(candidates)
    if z >= 1.0 or n <= 2:
        return candidates
    candidates = candidates.sorted()
    probs = candidates.probs()
    first = probs[:-1] - probs[1:]
    second = (first[:-1] - first[1:]).abs()
    total = second.sum()
    if total > 1e-6:
        second = second / total
    else:
        second = torch.full_like(second, 1.0 / second.numel())
    cumulative = second.cumsum(dim=0)
    positions = torch.arange(second.numel())
    last = _first_index((cumulative > z) & (positions >= min_keep), default=n)
    return candidates.keep(last)


def locally_typical(candidates: Candidates, p: float, min_keep: int = 1) -> Candidates:
    n = len(candidates)
    if p >= 1.0:
        return candidates
    probs = candidates.probs()
    entropy = torch.special.entr(probs).sum()
    shifted = (-torch.log(probs) - entropy).abs()
    order = torch.argsort(shifted, stable=True)
    cumulative = probs[order].cumsum(dim=0)
    positions = torch.arange(n)
    last = _first_index((cumulative > p) & (positions >= min_keep - 1), default=n - 1) + 1
    keep = order[:last]
    return Candidates(ids=candidates.ids[keep], logits=candidates.logits[keep], is_sorted=False)


def top_p(candidates: Candidates, p: float, min_keep: int = 1) -> Candidates:
    n = len(candidates)
    if p >= 1.0:
        return candidates
    candidates = candidates.sorted()
    cumulative = candidates.probs().cumsum(dim=0)
    positions = torch.arange(n)
    last = _first_index((cumulative >= p) & (positions + 1 >= min_keep), default=n - 1) + 1
    return candidates.keep(last)


def scale_temperature(candidates: Candidates, temperature: float) -> Candidates:
    return Candidates(
        ids=candidates.ids,
        logits=candidates.logits / temperature,
        is_sorted=candidates.is_sorted,
    )


def mirostat_k(s_hat: float, mu: float, n_vocab: int) -> int:
    """Cutoff size for mirostat v1 given the estimated Zipf exponent ``s_hat``."""
    epsilon_hat = s_hat - 1.0
    if s_hat <= 0.0 or abs(epsilon_hat) < 1e-9:
        return n_vocab
    try:
        base = (epsilon_hat * 2.0 ** mu) / (1.0 - n_vocab ** (-epsilon_hat))
        k = base ** (1.0 / s_hat) if base > 0 else float(n_vocab)
    except OverflowError:
        return n_vocab
    if not math.isfinite(k):
        return n_vocab
    return max(1, min(int(k), n_vocab))


def estimate_zipf_exponent(probs: torch.Tensor, m: int = MIROSTAT_M) -> float | None:
    """Least-squares fit of the Zipf exponent over the top ``m`` sorted probabilities."""
    top = probs[:m]
    top = top[top > 0]
    if top.numel() < 2:
        return None
    ranks = torch.arange(top.numel() - 1, dtype=torch.float64)
    t = torch.log((ranks + 2.0) / (ranks + 1.0))
    b = torch.log(top[:-1].to(torch.float64) / top[1:].to(torch.float64))
    return float((t * b).sum() / (t * t).sum())


class Sampler:
    """Per-run sampler. Build a fresh one for every generation so mirostat state starts over."""

    def __init__(
        self,
        config: GenerationConfig,
        vocab_size: int,
        safe_token_ids: Iterable[int] = (),
        seed: int | None = None,
    ) -> None:
        self._config = config
        self._vocab_size = vocab_size
        self._safe_token_ids = sorted({t for t in safe_token_ids if 0 <= t < vocab_size})
        self.seed = resolve_seed(config.seed if seed is None else seed)
        self._generator = torch.Generator().manual_seed(self.seed)
        self.mu = 2.0 * config.mirostat_target_entropy

    def reset(self) -> None:
        self._generator = torch.Generator().manual_seed(self.seed)
        self.mu = 2.0 * self._config.mirostat_target_entropy

    def penalize(self, logits: torch.Tensor, history: Sequence[int]) -> torch.Tensor:
        cfg = self._config
        window = list(history[-cfg.repeat_window:]) if cfg.repeat_window > 0 else []
        if not window:
            return logits

        saved = None
        if not cfg.penalize_newline and self._safe_token_ids:
            safe = torch.tensor(self._safe_token_ids, dtype=torch.long)
            saved = logits[safe].clone()

        logits = apply_repetition_penalty(logits, window, cfg.repeat_penalty)
        logits = apply_frequency_presence_penalty(logits, window, cfg.frequency_penalty, cfg.presence_penalty)

        if saved is not None:
            logits[safe] = saved
        return logits

    def sample(self, logits: torch.Tensor | Sequence[float], history: Sequence[int] = ()) -> int:
        logits = torch.as_tensor(logits).detach().to(torch.float32).flatten().clone()
        if logits.numel() != self._vocab_size:
            raise ValueError(f"expected {self._vocab_size} logits, got {logits.numel()}")

        kind = self._config.sampler_kind
        if kind == SamplerKind.greedy:
            return int(torch.argmax(logits))

        logits = self.penalize(logits, history)
        candidates = Candidates.from_logits(logits)

        if kind == SamplerKind.classic:
            return self._sample_classic(candidates)
        if kind == SamplerKind.mirostat_v1:
            return self._sample_mirostat_v1(candidates)
        if kind == SamplerKind.mirostat_v2:
            return self._sample_mirostat_v2(candidates)
        raise ValueError(f"unknown sampler kind: {kind}")

    def _draw(self, candidates: Candidates) -> tuple[int, torch.Tensor]:
        probs = candidates.probs()
        index = int(torch.multinomial(probs, num_samples=1, generator=self._generator))
        return index, probs

    def _sample_classic(self, candidates: Candidates) -> int:
        cfg = self._config
        candidates = top_k(candidates, cfg.top_k)
        candidates = tail_free(candidates, cfg.tail_free_z)
        candidates = locally_typical(candidates, cfg.typical_p)
        candidates = top_p(candidates, cfg.top_p)
        if cfg.temperature == 0.0:
            return int(candidates.sorted().ids[0])
        candidates = scale_temperature(candidates, cfg.temperature)
        index, _ = self._draw(candidates)
        return int(candidates.ids[index])

    def _update_mu(self, probability: float) -> None:
        cfg = self._config
        observed_surprise = -math.log2(max(probability, 1e-45))
        self.mu -= cfg.mirostat_learning_rate * (observed_surprise - cfg.mirostat_target_entropy)

    def _mirostat_temperature(self, candidates: Candidates) -> Candidates:
        if self._config.temperature > 0.0:
            return scale_temperature(candidates, self._config.temperature)
        # Zero temperature collapses the distribution onto its argmax.
        return candidates.sorted().keep(1)

    def _sample_mirostat_v1(self, candidates: Candidates) -> int:
        candidates = self._mirostat_temperature(candidates).sorted()
        s_hat = estimate_zipf_exponent(candidates.probs())
        if s_hat is not None:
            k = mirostat_k(s_hat, self.mu, self._vocab_size)
            candidates = top_k(candidates, k)
        index, probs = self._draw(candidates)
        self._update_mu(float(probs[index]))
        return int(candidates.ids[index])

    def _sample_mirostat_v2(self, candidates: Candidates) -> int:
        candidates = self._mirostat_temperature(candidates).sorted()
        surprise = -torch.log2(candidates.probs())
        keep = max(1, _first_index(surprise > self.mu, default=len(candidates)))
        candidates = candidates.keep(keep)
        index, probs = self._draw(candidates)
        self._update_mu(float(probs[index]))
        return int(candidates.ids[index])
