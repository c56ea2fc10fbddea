from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Protocol

ANEMIC = "Anemic"
NON_ANEMIC = "Non-anemic"
LABELS = (ANEMIC, NON_ANEMIC)

# Cautious answer returned whenever no real classification is available.
DEFAULT_PREDICTION = ANEMIC
DEFAULT_CONFIDENCE = 0.8

ALLOWED_MIMETYPES = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
)
MIN_UPLOAD_BYTES = 1024
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class ScreeningError(RuntimeError):
    """Base class for failures inside the screening core."""


class NetworkError(ScreeningError):
    """Transport failure, timeout or unexpected status while downloading."""


class CorruptArtifactError(ScreeningError):
    """A model file exists but no session could be built from it."""


class PreprocessingError(ScreeningError):
    """The image could not be decoded, resized or laid out as a tensor."""


class ValidationError(ScreeningError):
    """The prepared tensor contains values the model must not see."""


class InferenceError(ScreeningError):
    """The forward pass failed or produced an unusable output."""


class UploadRejected(ScreeningError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "Upload rejected")
        self.errors = list(errors)


class LoadState(str, enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadedImage:
    """Metadata the upload transport knows about a received file."""

    mimetype: str
    size: int
    original_name: str = ""


@dataclass(frozen=True)
class PredictionDebug:
    raw_output: float
    output_shape: tuple[int, ...]
    inference_time_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "rawOutput": self.raw_output,
            "outputShape": list(self.output_shape),
            "inferenceTimeMs": self.inference_time_ms,
        }


@dataclass(frozen=True)
class PredictionResult:
    prediction: str
    confidence: float
    using_default_prediction: bool
    model_source: str
    debug: PredictionDebug | None = None
    error: str | None = None

    @classmethod
    def default(cls, model_source: str = "none", error: str | None = None) -> "PredictionResult":
        return cls(
            prediction=DEFAULT_PREDICTION,
            confidence=DEFAULT_CONFIDENCE,
            using_default_prediction=True,
            model_source=model_source,
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prediction": self.prediction,
            "confidence": self.confidence,
            "usingDefaultPrediction": self.using_default_prediction,
            "modelSource": self.model_source,
            "debug": self.debug.to_dict() if self.debug is not None else None,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class ModelStatus:
    is_loaded: bool
    load_attempts: int
    max_attempts: int
    is_loading: bool
    model_source: str
    cached: bool = False
    local_exists: bool = False
    input_names: tuple[str, ...] = field(default_factory=tuple)
    output_names: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "isLoaded": self.is_loaded,
            "loadAttempts": self.load_attempts,
            "maxAttempts": self.max_attempts,
            "isLoading": self.is_loading,
            "modelSource": self.model_source,
            "cached": self.cached,
            "localExists": self.local_exists,
            "inputNames": list(self.input_names),
            "outputNames": list(self.output_names),
        }


class Predictor(Protocol):
    """Capability set shared by the local-session and hosted-API backends."""

    def initialize(self) -> ModelStatus: ...

    def predict(self, image_path: str) -> PredictionResult: ...

    def validate_image_file(self, upload: UploadedImage) -> list[str]: ...

    def get_model_status(self) -> ModelStatus: ...

    def retry_load_model(self) -> ModelStatus: ...

    def clear_cache(self) -> dict[str, Any]: ...

    def close(self) -> None: ...


def validate_image_file(upload: UploadedImage) -> list[str]:
    errors: list[str] = []
    if (upload.mimetype or "").lower() not in ALLOWED_MIMETYPES:
        errors.append("Invalid file type. Please upload a JPEG, PNG, GIF or WebP image.")
    if upload.size > MAX_UPLOAD_BYTES:
        errors.append("File too large. Please upload an image smaller than 10MB.")
    elif upload.size < MIN_UPLOAD_BYTES:
        errors.append("File too small. Please upload an image of at least 1KB.")
    return errors


__all__ = [
    "ANEMIC",
    "NON_ANEMIC",
    "LABELS",
    "DEFAULT_PREDICTION",
    "DEFAULT_CONFIDENCE",
    "ALLOWED_MIMETYPES",
    "MIN_UPLOAD_BYTES",
    "MAX_UPLOAD_BYTES",
    "ScreeningError",
    "NetworkError",
    "CorruptArtifactError",
    "PreprocessingError",
    "ValidationError",
    "InferenceError",
    "UploadRejected",
    "LoadState",
    "UploadedImage",
    "PredictionDebug",
    "PredictionResult",
    "ModelStatus",
    "Predictor",
    "validate_image_file",
]
