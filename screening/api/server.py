from __future__ import annotations

import logging
import math
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, File, HTTPException, UploadFile
from starlette.concurrency import run_in_threadpool

from ..ai.types import (
    MAX_UPLOAD_BYTES,
    PredictionResult,
    Predictor,
    UploadedImage,
    UploadRejected,
)
from .schemas import (
    ApiPredictResponse,
    CacheClearResponse,
    HealthResponse,
    ModelStatusResponse,
    PredictionDetail,
    PredictResponse,
)


logger = logging.getLogger(__name__)


def create_app(
    predictor: Predictor,
    upload_dir: Path | None = None,
    max_upload_bytes: int = MAX_UPLOAD_BYTES,
) -> FastAPI:
    uploads = upload_dir or Path("uploads")
    try:
        uploads.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("Failed to ensure upload directory %s: %s", uploads, exc)

    app = FastAPI(title="Eyelid Anemia Screening API", version="0.1.0")
    app.state.predictor = predictor
    app.state.upload_dir = uploads
    app.state.max_upload_bytes = max_upload_bytes

    async def _classify_upload(upload: UploadFile) -> PredictionResult:
        # Read one byte past the limit so oversized files are detected.
        data = await upload.read(max_upload_bytes + 1)
        metadata = UploadedImage(
            mimetype=upload.content_type or "",
            size=len(data),
            original_name=upload.filename or "",
        )
        errors = predictor.validate_image_file(metadata)
        if metadata.size > max_upload_bytes and metadata.size <= MAX_UPLOAD_BYTES:
            errors.append(
                f"File too large. Please upload an image of at most {max_upload_bytes} bytes."
            )
        if errors:
            raise UploadRejected(errors)

        suffix = Path(metadata.original_name).suffix.lower()[:8]
        image_path = uploads / f"{int(time.time() * 1000)}-{uuid.uuid4().hex}{suffix}"
        image_path.write_bytes(data)
        logger.info(
            "Stored upload name=%s mimetype=%s bytes=%d path=%s",
            metadata.original_name,
            metadata.mimetype,
            metadata.size,
            image_path,
        )
        try:
            return await run_in_threadpool(predictor.predict, str(image_path))
        finally:
            image_path.unlink(missing_ok=True)

    async def _predict_or_reject(upload: UploadFile | None) -> PredictionResult:
        if upload is None:
            raise HTTPException(
                status_code=400,
                detail={"error": "No image file uploaded", "code": "NO_FILE"},
            )
        try:
            return await _classify_upload(upload)
        except UploadRejected as exc:
            logger.warning("Upload rejected name=%s errors=%s", upload.filename, exc.errors)
            raise HTTPException(
                status_code=400,
                detail={"error": "Invalid upload", "code": "UPLOAD_REJECTED", "details": exc.errors},
            ) from exc
        except OSError as exc:
            logger.exception("Failed to store upload name=%s", upload.filename)
            raise HTTPException(
                status_code=500,
                detail={"error": "Prediction failed", "code": "PREDICTION_ERROR"},
            ) from exc

    @app.get("/health", response_model=HealthResponse)
    def healthcheck() -> HealthResponse:
        status = predictor.get_model_status()
        return HealthResponse(
            status="ok",
            timestamp=datetime.now(timezone.utc).isoformat(),
            model={
                "status": "loaded" if status.is_loaded else "not_loaded",
                "modelSource": status.model_source,
                "isLoading": status.is_loading,
                "loadAttempts": status.load_attempts,
                "maxAttempts": status.max_attempts,
            },
        )

    @app.post("/predict", response_model=PredictResponse)
    async def predict(eyelid: UploadFile | None = File(None)) -> PredictResponse:
        result = await _predict_or_reject(eyelid)
        logger.info(
            "Prediction served prediction=%s confidence=%.2f source=%s default=%s",
            result.prediction,
            result.confidence,
            result.model_source,
            result.using_default_prediction,
        )
        return PredictResponse(
            prediction=result.prediction,
            confidence=result.confidence,
            confidencePercentage=_percentage(result.confidence),
            source=result.model_source,
            usingDefault=result.using_default_prediction,
            error=result.error,
        )

    @app.post("/api/predict", response_model=ApiPredictResponse)
    async def api_predict(image: UploadFile | None = File(None)) -> ApiPredictResponse:
        result = await _predict_or_reject(image)
        return ApiPredictResponse(
            prediction=PredictionDetail(
                result=result.prediction,
                confidence=result.confidence,
                confidencePercentage=_percentage(result.confidence),
                usingDefaultPrediction=result.using_default_prediction,
            ),
            modelSource=result.model_source,
        )

    @app.get("/api/model-status", response_model=ModelStatusResponse)
    def model_status() -> ModelStatusResponse:
        return ModelStatusResponse(**predictor.get_model_status().to_dict())

    @app.post("/api/model/retry-load", response_model=ModelStatusResponse)
    async def retry_load() -> ModelStatusResponse:
        logger.info("Manual model reload requested")
        status = await run_in_threadpool(predictor.retry_load_model)
        return ModelStatusResponse(**status.to_dict())

    @app.post("/api/model/clear-cache", response_model=CacheClearResponse)
    def clear_cache() -> CacheClearResponse:
        logger.info("Model cache clear requested")
        return CacheClearResponse(**predictor.clear_cache())

    @app.on_event("shutdown")
    async def _close_predictor() -> None:
        predictor.close()

    return app


def _percentage(confidence: float) -> int:
    # Halves round up.
    return int(math.floor(confidence * 100 + 0.5))


__all__ = ["create_app"]
