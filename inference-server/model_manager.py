from __future__ import annotations

import logging
import queue
import threading
from typing import Optional

from errors import (
    EvaluationError,
    LoadInProgressError,
    ModelLoadError,
    ModelNotLoadedError,
    PlaygroundError,
    ReentrantRunError,
)
from generation import (
    DEFAULT_GRACE_SECONDS,
    CachedPrefix,
    GenerationSession,
    PromptProgress,
    RunHandle,
    SessionEvent,
)
from runtime_binding import ModelRuntime, RuntimeLoader, load_transformers_runtime
from sampling import resolve_seed
from schemas import GenerationConfig, GenerationResponse, StatusResponse
from status import (
    ACTIVE_RUN_STATES,
    TERMINAL_STATES,
    Completed,
    Failed,
    GenerationFailure,
    Idle,
    Loading,
    MissingModel,
    Running,
    Status,
    Streaming,
    to_status_response,
)
from version_tracker import VersionState, VersionTracker

logger = logging.getLogger(__name__)


class ModelManager:
    """
    Lifecycle contract:
    - one model load in flight at a time; a second request is refused, not queued
    - a load starts only from missing_model or idle; a terminal result must be acknowledged first
    - a run starts only from idle and owns the runtime until it publishes its terminal status
    - every status transition is published, in order, to all subscribers
    - reloading frees the previous runtime and forgets the cached prefix
    """

    def __init__(
        self,
        loader: RuntimeLoader = load_transformers_runtime,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> None:
        self._lock = threading.RLock()
        self._loader = loader
        self._grace_seconds = grace_seconds
        self._loading = False
        self._runtime: ModelRuntime | None = None
        self._cached_prefix: CachedPrefix | None = None
        self._version = VersionTracker()
        self._status: Status = MissingModel()
        self._subscribers: list[queue.Queue] = []
        self._active: RunHandle | None = None
        self._run_thread: threading.Thread | None = None
        self._load_thread: threading.Thread | None = None
        self._next_run_id = 1

    # -- observation ---------------------------------------------------------

    def status(self) -> Status:
        with self._lock:
            return self._status

    def status_response(self) -> StatusResponse:
        with self._lock:
            runtime = self._runtime
            return to_status_response(
                self._status,
                self._version.get(),
                context_length=runtime.context_length if runtime else None,
                vocab_size=runtime.vocab_size if runtime else None,
            )

    def is_ready(self) -> bool:
        with self._lock:
            return self._runtime is not None and not self._loading

    def current_version(self) -> VersionState:
        with self._lock:
            return self._version.get()

    @property
    def cached_prefix(self) -> Optional[CachedPrefix]:
        with self._lock:
            return self._cached_prefix

    def subscribe(self) -> queue.Queue:
        """
        Register a queue that receives every status transition in order.
        Queues are unbounded (a run publishes one entry per token), so a
        consumer that stops draining must call unsubscribe().
        """
        q: queue.Queue = queue.Queue()
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def _publish(self, status: Status) -> None:
        with self._lock:
            self._status = status
            for q in self._subscribers:
                q.put_nowait(status)

    # -- model lifecycle -----------------------------------------------------

    def _load_refusal(self) -> Optional[PlaygroundError]:
        # Loads start only from missing_model or idle.
        if self._loading:
            return LoadInProgressError("load already in progress")
        if isinstance(self._status, ACTIVE_RUN_STATES):
            return ReentrantRunError("a generation run is active")
        if isinstance(self._status, TERMINAL_STATES):
            return ReentrantRunError("the previous result has not been acknowledged")
        return None

    def request_load_async(self, model_path: str) -> tuple[bool, str]:
        with self._lock:
            refusal = self._load_refusal()
            if refusal is not None:
                logger.warning(f"Load of {model_path} refused: {refusal.message}")
                return False, refusal.message
            self._loading = True
            previous = self._runtime
            self._runtime = None
            self._cached_prefix = None
            self._version.clear()
            self._publish(Loading(progress=0.0))

        if previous is not None:
            logger.info("Freeing previously loaded model")
            previous.close()

        t = threading.Thread(
            target=self._load_worker,
            args=(model_path,),
            daemon=True,
            name="model-load-worker",
        )
        with self._lock:
            self._load_thread = t
        t.start()
        return True, "load started"

    def load(self, model_path: str, timeout: float | None = None) -> VersionState:
        """
        Load synchronously. Raises ModelLoadError when the model cannot be loaded,
        TimeoutError when it is still loading after ``timeout`` seconds.
        """
        with self._lock:
            refusal = self._load_refusal()
        if refusal is not None:
            raise refusal
        ok, msg = self.request_load_async(model_path)
        if not ok:
            raise LoadInProgressError(msg)
        self.wait(timeout)
        with self._lock:
            loading = self._loading
            status = self._status
        if loading:
            raise TimeoutError(f"Model {model_path} did not finish loading in time")
        if isinstance(status, MissingModel):
            message = status.error.message if status.error else "model load failed"
            raise ModelLoadError(message)
        return self.current_version()

    def _report_load_progress(self, progress: float) -> None:
        progress = min(max(progress, 0.0), 1.0)
        with self._lock:
            if self._loading:
                self._publish(Loading(progress=progress))

    def _load_worker(self, model_path: str) -> None:
        logger.info(f"Starting model load: {model_path}")
        try:
            runtime = self._loader(model_path, self._report_load_progress)
        except Exception as e:
            error = e if isinstance(e, ModelLoadError) else ModelLoadError(f"{type(e).__name__}: {e}")
            logger.error(f"Model load failed: {error.message}", exc_info=True)
            with self._lock:
                self._loading = False
                self._publish(MissingModel(error=GenerationFailure.from_exception(error)))
            return

        with self._lock:
            self._runtime = runtime
            version = self._version.bump(model_path)
            self._loading = False
            self._publish(Idle())
        logger.info(f"Model load completed: {model_path} (version {version.model_version})")

    # -- generation ----------------------------------------------------------

    def start_run(self, config: GenerationConfig) -> RunHandle:
        with self._lock:
            status = self._status
            if isinstance(status, ACTIVE_RUN_STATES):
                raise ReentrantRunError("A generation run is already active")
            if self._loading:
                raise ModelNotLoadedError("Model is still loading")
            if self._runtime is None:
                raise ModelNotLoadedError("No model is loaded")
            if not isinstance(status, Idle):
                raise ReentrantRunError("The previous result has not been acknowledged")

            handle = RunHandle(run_id=self._next_run_id, seed=resolve_seed(config.seed))
            self._next_run_id += 1
            self._active = handle
            runtime = self._runtime
            cached = self._cached_prefix
            version = self._version.get().model_version
            self._publish(Running(handle=handle))

            t = threading.Thread(
                target=self._run_worker,
                args=(handle, config, runtime, cached, version),
                daemon=True,
                name=f"generation-run-{handle.run_id}",
            )
            self._run_thread = t
        t.start()
        return handle

    def _run_worker(
        self,
        handle: RunHandle,
        config: GenerationConfig,
        runtime: ModelRuntime,
        cached: CachedPrefix | None,
        model_version: int,
    ) -> None:
        def on_event(event: SessionEvent) -> None:
            if isinstance(event, PromptProgress):
                self._publish(Running(handle=handle, prompt_progress=event.fraction))
            else:
                self._publish(Streaming(handle=handle, partial=event.response))

        session = GenerationSession(
            runtime,
            config,
            cancel_token=handle.cancel_token,
            on_event=on_event,
            seed=handle.seed,
            model_version=model_version,
            grace_seconds=self._grace_seconds,
        )
        try:
            response, new_prefix = session.run(cached)
        except Exception as e:
            if isinstance(e, PlaygroundError):
                logger.error(f"Run {handle.run_id} failed: {e.kind}: {e.message}")
            else:
                logger.error(f"Run {handle.run_id} failed unexpectedly", exc_info=True)
            with self._lock:
                # Context contents are unknown after a failed evaluation.
                self._cached_prefix = None
                self._active = None
                self._publish(Failed(failure=GenerationFailure.from_exception(e)))
            return

        with self._lock:
            self._cached_prefix = new_prefix
            self._active = None
            self._publish(Completed(response=response))

    def cancel(self) -> bool:
        """Request cancellation of the active run. Returns False when nothing is running."""
        with self._lock:
            if self._active is None:
                return False
            self._active.cancel()
            logger.info(f"Cancellation requested for run {self._active.run_id}")
            return True

    def acknowledge(self) -> bool:
        """Reset a terminal status back to idle once the caller has consumed it."""
        with self._lock:
            if not isinstance(self._status, TERMINAL_STATES):
                return False
            self._publish(Idle() if self._runtime is not None else MissingModel())
            return True

    def wait(self, timeout: float | None = None) -> None:
        with self._lock:
            threads = [t for t in (self._load_thread, self._run_thread) if t is not None]
        for t in threads:
            t.join(timeout)

    def generate(self, config: GenerationConfig, timeout: float | None = None) -> GenerationResponse:
        """Run to completion on the worker and return the final response."""
        self.start_run(config)
        self.wait(timeout)
        status = self.status()
        if isinstance(status, Completed):
            self.acknowledge()
            return status.response
        if isinstance(status, Failed):
            self.acknowledge()
            raise EvaluationError(f"{status.failure.kind}: {status.failure.message}")
        raise TimeoutError("Generation did not finish in time")

    def close(self) -> None:
        self.cancel()
        self.wait()
        with self._lock:
            runtime = self._runtime
            self._runtime = None
            self._cached_prefix = None
            self._version.clear()
            self._publish(MissingModel())
        if runtime is not None:
            runtime.close()
