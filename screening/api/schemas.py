from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class PredictResponse(BaseModel):
    success: bool = True
    prediction: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    confidencePercentage: int = Field(..., ge=0, le=100)
    source: str
    usingDefault: bool
    error: str | None = None


class PredictionDetail(BaseModel):
    result: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    confidencePercentage: int = Field(..., ge=0, le=100)
    usingDefaultPrediction: bool


class ApiPredictResponse(BaseModel):
    success: bool = True
    prediction: PredictionDetail
    message: str = "Prediction completed successfully"
    modelSource: str


class ModelStatusResponse(BaseModel):
    isLoaded: bool
    loadAttempts: int
    maxAttempts: int
    isLoading: bool
    modelSource: str
    cached: bool
    localExists: bool
    inputNames: List[str]
    outputNames: List[str]


class CacheClearResponse(BaseModel):
    success: bool
    message: str


class HealthModel(BaseModel):
    status: str
    modelSource: str
    isLoading: bool
    loadAttempts: int
    maxAttempts: int


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    model: HealthModel


__all__ = [
    "PredictResponse",
    "PredictionDetail",
    "ApiPredictResponse",
    "ModelStatusResponse",
    "CacheClearResponse",
    "HealthModel",
    "HealthResponse",
]
