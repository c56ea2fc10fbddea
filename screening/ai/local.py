from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .acquisition import ModelManager
from .executor import run_inference
from .preprocessing import preprocess_image, validate_tensor
from .types import (
    ModelStatus,
    PredictionDebug,
    PredictionResult,
    UploadedImage,
    validate_image_file,
)


logger = logging.getLogger(__name__)

ERROR_SOURCE = "error_fallback"


@dataclass
class LocalModelPredictor:
    """Classify eyelid images with the locally loaded ONNX session.

    ``predict`` never raises: without a session, or when any step fails, it
    answers with the cautious default prediction instead.
    """

    manager: ModelManager

    def initialize(self) -> ModelStatus:
        logger.info("Initializing local model")
        return self.manager.initialize()

    def predict(self, image_path: str) -> PredictionResult:
        session, source = self.manager.snapshot()
        if session is None:
            logger.warning("Model not loaded; returning default prediction for %s", image_path)
            return PredictionResult.default()

        try:
            tensor = validate_tensor(preprocess_image(image_path))
            outcome = run_inference(session, tensor)
        except Exception as exc:
            logger.exception("Prediction failed for %s; returning default prediction", image_path)
            return PredictionResult.default(model_source=ERROR_SOURCE, error=str(exc))

        logger.info(
            "Prediction complete label=%s confidence=%.4f source=%s elapsed_ms=%.1f",
            outcome.label,
            outcome.confidence,
            source,
            outcome.inference_time_ms,
        )
        return PredictionResult(
            prediction=outcome.label,
            confidence=outcome.confidence,
            using_default_prediction=False,
            model_source=source,
            debug=PredictionDebug(
                raw_output=outcome.raw_score,
                output_shape=outcome.output_shape,
                inference_time_ms=outcome.inference_time_ms,
            ),
        )

    def validate_image_file(self, upload: UploadedImage) -> list[str]:
        return validate_image_file(upload)

    def get_model_status(self) -> ModelStatus:
        return self.manager.get_status()

    def retry_load_model(self) -> ModelStatus:
        return self.manager.retry_load_model()

    def clear_cache(self) -> dict[str, Any]:
        return self.manager.clear_cache()

    def close(self) -> None:
        self.manager.close()


__all__ = ["LocalModelPredictor", "ERROR_SOURCE"]
