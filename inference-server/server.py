from __future__ import annotations

import logging
import os

from fastapi import FastAPI, HTTPException
from fastapi import status as http_status
from fastapi.responses import JSONResponse

from errors import ModelNotLoadedError, ReentrantRunError
from model_manager import ModelManager
from schemas import (
    GenerateAcceptedResponse,
    GenerationConfig,
    LoadModelRequest,
    LoadModelResponse,
    StatusResponse,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _env(name: str, default: str) -> str:
    v = os.environ.get(name)
    return v if v else default


# MODEL_PATH may be a local checkpoint directory or a hub id; empty means "wait for /load-model".
DEFAULT_MODEL_PATH = _env("MODEL_PATH", "")
FINISH_GRACE_SECONDS = int(_env("FINISH_GRACE_MS", "50")) / 1000.0


def create_app(model_manager: ModelManager) -> FastAPI:
    app = FastAPI(title="LLaMA Playground Inference Server", version="0.1.0")
    app.state.model_manager = model_manager

    @app.get("/healthz")
    def healthz() -> dict:
        """Health check - server is up (model may still be loading)."""
        return {"ok": True}

    @app.get("/ready", response_model=None)
    def ready() -> JSONResponse:
        """Readiness check - model is loaded and ready to generate."""
        if model_manager.is_ready():
            return JSONResponse(content={"ready": True})

        st = model_manager.status_response()
        content = {
            "ready": False,
            "message": "Model is not loaded",
            "state": st.state,
            "model_path": st.model_path,
        }
        if st.error:
            content["error"] = st.error.model_dump()
        return JSONResponse(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            content=content,
        )

    @app.get("/status", response_model=StatusResponse)
    def status() -> StatusResponse:
        return model_manager.status_response()

    @app.post("/load-model", response_model=LoadModelResponse)
    def load_model(req: LoadModelRequest) -> LoadModelResponse:
        ok, msg = model_manager.request_load_async(req.model_path)
        if not ok:
            raise HTTPException(status_code=409, detail=msg)
        return LoadModelResponse(ok=True, requested_model_path=req.model_path, message=msg)

    @app.post("/generate", response_model=GenerateAcceptedResponse, status_code=http_status.HTTP_202_ACCEPTED)
    def generate(config: GenerationConfig) -> GenerateAcceptedResponse:
        try:
            handle = model_manager.start_run(config)
        except ReentrantRunError as e:
            raise HTTPException(status_code=409, detail=e.message)
        except ModelNotLoadedError as e:
            raise HTTPException(status_code=503, detail=e.message)
        return GenerateAcceptedResponse(run_id=handle.run_id, seed=handle.seed)

    @app.post("/cancel")
    def cancel() -> dict:
        return {"cancelled": model_manager.cancel()}

    @app.post("/acknowledge")
    def acknowledge() -> dict:
        return {"acknowledged": model_manager.acknowledge()}

    return app


model_manager = ModelManager(grace_seconds=FINISH_GRACE_SECONDS)
app = create_app(model_manager)

if DEFAULT_MODEL_PATH:
    logger.info(f"Initializing inference server with model: {DEFAULT_MODEL_PATH}")
    model_manager.request_load_async(DEFAULT_MODEL_PATH)
else:
    logger.info("Inference server initialized without a model; POST /load-model to load one")


def main() -> None:
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(_env("PORT", "8001")))


if __name__ == "__main__":
    main()
