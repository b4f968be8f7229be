from __future__ import annotations

import argparse
import os
import sys
import time
from typing import Callable, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential


def _env(name: str, default: str) -> str:
    v = os.environ.get(name)
    return v if v else default


DEFAULT_INFERENCE_URL = _env("INFERENCE_URL", "http://localhost:8001")

TERMINAL_STATES = ("completed", "failed")


class PlaygroundClient:
    """
    Drives the local inference server:
    1. Requests a model load and waits for it to become ready
    2. Starts a run and polls /status, reporting partial text as it streams
    3. Acknowledges the terminal status so the server returns to idle
    """

    def __init__(self, base_url: str = DEFAULT_INFERENCE_URL, client: Optional[httpx.Client] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=300.0)  # Long timeout for model loads

    def status(self) -> dict:
        resp = self.client.get(f"{self.base_url}/status")
        resp.raise_for_status()
        return resp.json()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def load_model(self, model_path: str) -> dict:
        """Request a model load. Transport errors are retried; a 409 (load in flight) is not."""
        resp = self.client.post(f"{self.base_url}/load-model", json={"model_path": model_path})
        resp.raise_for_status()
        return resp.json()

    def wait_until_ready(self, max_wait_seconds: float = 600, check_interval: float = 1.0) -> dict:
        start_time = time.time()
        while time.time() - start_time < max_wait_seconds:
            st = self.status()
            if st["state"] == "missing_model" and st.get("error"):
                raise RuntimeError(f"Model load failed: {st['error']['message']}")
            if st["state"] not in ("loading", "missing_model"):
                return st
            time.sleep(check_interval)
        raise TimeoutError(f"Model loading did not complete within {max_wait_seconds}s")

    def cancel(self) -> bool:
        resp = self.client.post(f"{self.base_url}/cancel")
        resp.raise_for_status()
        return resp.json().get("cancelled", False)

    def acknowledge(self) -> bool:
        resp = self.client.post(f"{self.base_url}/acknowledge")
        resp.raise_for_status()
        return resp.json().get("acknowledged", False)

    def complete(
        self,
        config: dict,
        on_partial: Optional[Callable[[str], None]] = None,
        poll_interval: float = 0.1,
        max_wait_seconds: float = 3600,
    ) -> dict:
        """Start a run and block until it finishes. Returns the final response body."""
        resp = self.client.post(f"{self.base_url}/generate", json=config)
        if resp.status_code == 409:
            raise RuntimeError(f"Server refused the run: {resp.json().get('detail')}")
        resp.raise_for_status()
        run_id = resp.json()["run_id"]

        last_text = None
        start_time = time.time()
        while time.time() - start_time < max_wait_seconds:
            st = self.status()
            state = st["state"]
            response = st.get("response") or {}

            if state in ("streaming", "completed") and on_partial is not None:
                text = response.get("result", "")
                if text != last_text:
                    on_partial(text)
                    last_text = text

            if state in TERMINAL_STATES:
                self.acknowledge()
                if state == "failed":
                    error = st.get("error") or {}
                    raise RuntimeError(f"Run {run_id} failed: {error.get('kind')}: {error.get('message')}")
                return response

            time.sleep(poll_interval)

        self.cancel()
        raise TimeoutError(f"Run {run_id} did not finish within {max_wait_seconds}s")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a prompt against the local inference server")
    parser.add_argument("prompt", help="Prompt text")
    parser.add_argument("--url", default=DEFAULT_INFERENCE_URL, help="Inference server URL")
    parser.add_argument("--model-path", default=os.environ.get("MODEL_PATH"), help="Load this model first")
    parser.add_argument("--tokens", type=int, default=256, help="Token budget")
    parser.add_argument(
        "--sampler",
        default="classic",
        choices=["greedy", "classic", "mirostat_v1", "mirostat_v2"],
    )
    parser.add_argument("--temperature", type=float, default=0.19)
    parser.add_argument("--seed", type=int, default=-1)
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the playground client."""
    args = parse_args(argv)
    client = PlaygroundClient(base_url=args.url)

    if args.model_path:
        print(f"Loading model {args.model_path}...")
        client.load_model(args.model_path)
    client.wait_until_ready()

    printed = 0

    def on_partial(text: str) -> None:
        nonlocal printed
        sys.stdout.write(text[printed:])
        sys.stdout.flush()
        printed = len(text)

    config = {
        "prompt": args.prompt,
        "token_budget": args.tokens,
        "sampler_kind": args.sampler,
        "temperature": args.temperature,
        "seed": args.seed,
    }
    try:
        response = client.complete(config, on_partial=on_partial)
    except KeyboardInterrupt:
        client.cancel()
        return 130
    except RuntimeError as e:
        print(f"\n✗ {e}", file=sys.stderr)
        return 1

    print(
        f"\n\n[{response['finish_reason']}] {response['tokens']} tokens "
        f"in {response['duration']:.2f}s (seed {response['seed']})"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
