from __future__ import annotations

from .types import ModelStatus, PredictionResult, Predictor, UploadedImage

__all__ = [
    "ModelStatus",
    "PredictionResult",
    "Predictor",
    "UploadedImage",
    "ModelManager",
    "LocalModelPredictor",
    "HuggingFaceImageClassifier",
]


def __getattr__(name: str):
    if name == "ModelManager":
        from .acquisition import ModelManager

        return ModelManager
    if name == "LocalModelPredictor":
        from .local import LocalModelPredictor

        return LocalModelPredictor
    if name == "HuggingFaceImageClassifier":
        from .huggingface_client import HuggingFaceImageClassifier

        return HuggingFaceImageClassifier
    raise AttributeError(f"module 'screening.ai' has no attribute {name!r}")
