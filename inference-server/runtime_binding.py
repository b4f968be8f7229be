from __future__ import annotations

import logging
import os
from typing import Callable, Optional, Protocol, Sequence

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, DynamicCache

from errors import ModelLoadError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class ModelRuntime(Protocol):
    """Loaded weights plus one mutable evaluation context. Not safe for concurrent use."""

    context_length: int
    vocab_size: int
    eos_token_id: int
    safe_token_ids: tuple[int, ...]

    def tokenize(self, text: str) -> list[int]: ...

    def evaluate(self, tokens: Sequence[int], n_past: int, n_threads: int) -> bool: ...

    def logits(self) -> torch.Tensor: ...

    def detokenize(self, token_ids: Sequence[int]) -> str: ...

    def close(self) -> None: ...


RuntimeLoader = Callable[[str, ProgressCallback], ModelRuntime]


def _default_device() -> torch.device:
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def _newline_token_ids(tokenizer) -> tuple[int, ...]:
    ids = set()
    encoded = tokenizer.encode("\n", add_special_tokens=False)
    if encoded:
        ids.add(encoded[-1])
    # Byte-fallback and byte-level BPE spellings of "\n".
    for piece in ("\n", "<0x0A>", "Ċ"):
        token_id = tokenizer.convert_tokens_to_ids(piece)
        if isinstance(token_id, int) and token_id != tokenizer.unk_token_id:
            ids.add(token_id)
    return tuple(sorted(ids))


class TransformersRuntime:
    """Runtime binding over a Hugging Face causal LM with an explicit KV cache."""

    def __init__(self, model, tokenizer, device: torch.device) -> None:
        self._model = model
        self._tokenizer = tokenizer
        self._device = device
        self._cache: Optional[DynamicCache] = None
        self._logits: Optional[torch.Tensor] = None

        config = model.config
        self.context_length = int(getattr(config, "max_position_embeddings", 0) or tokenizer.model_max_length)
        self.vocab_size = int(config.vocab_size)
        eos = tokenizer.eos_token_id if tokenizer.eos_token_id is not None else config.eos_token_id
        if isinstance(eos, (list, tuple)):
            eos = eos[0]
        self.eos_token_id = int(eos) if eos is not None else -1
        self.safe_token_ids = _newline_token_ids(tokenizer)

    def tokenize(self, text: str) -> list[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=True))

    def evaluate(self, tokens: Sequence[int], n_past: int, n_threads: int) -> bool:
        if not tokens:
            return True
        if self._device.type == "cpu":
            torch.set_num_threads(n_threads)
        try:
            with torch.no_grad():
                if self._cache is None or n_past == 0:
                    self._cache = DynamicCache()
                elif self._cache.get_seq_length() > n_past:
                    self._cache.crop(n_past)
                if self._cache.get_seq_length() != n_past:
                    logger.error(
                        f"Context holds {self._cache.get_seq_length()} tokens but evaluation expects {n_past}"
                    )
                    return False

                input_ids = torch.tensor([list(tokens)], dtype=torch.long, device=self._device)
                outputs = self._model(input_ids=input_ids, past_key_values=self._cache, use_cache=True)
                self._cache = outputs.past_key_values
                self._logits = outputs.logits[0, -1].float().cpu()
        except Exception as e:
            logger.error(f"Evaluation of {len(tokens)} token(s) at position {n_past} failed: {type(e).__name__}: {e}")
            return False
        return True

    def logits(self) -> torch.Tensor:
        if self._logits is None:
            raise RuntimeError("No logits available before the first evaluation")
        return self._logits

    def detokenize(self, token_ids: Sequence[int]) -> str:
        return self._tokenizer.decode(list(token_ids), skip_special_tokens=True)

    def close(self) -> None:
        self._cache = None
        self._logits = None
        self._model = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()


def load_transformers_runtime(model_path: str, progress: ProgressCallback) -> TransformersRuntime:
    device = _default_device()
    # Respect HF_HOME when the path is a hub id rather than a local directory.
    hf_home = os.environ.get("HF_HOME")
    logger.info(f"Loading model {model_path} (HF_HOME={hf_home}, device={device})")

    try:
        progress(0.1)
        logger.info(f"Loading tokenizer for {model_path}...")
        tokenizer = AutoTokenizer.from_pretrained(model_path, use_fast=True)

        progress(0.3)
        logger.info(f"Loading model weights for {model_path}...")
        model = AutoModelForCausalLM.from_pretrained(
            model_path,
            torch_dtype=torch.float16 if device.type == "cuda" else torch.float32,
            low_cpu_mem_usage=True,
            device_map=None,
        )

        progress(0.9)
        logger.info(f"Moving model to device {device}...")
        model.to(device)
        model.eval()
    except Exception as e:
        raise ModelLoadError(f"Could not load model from {model_path}: {type(e).__name__}: {e}") from e

    runtime = TransformersRuntime(model=model, tokenizer=tokenizer, device=device)
    progress(1.0)
    logger.info(
        f"Model {model_path} loaded successfully "
        f"(context_length={runtime.context_length}, vocab_size={runtime.vocab_size})"
    )
    return runtime
