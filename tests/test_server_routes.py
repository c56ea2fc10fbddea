import io
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

import numpy as np
from fastapi.testclient import TestClient
from PIL import Image

from screening.ai.acquisition import ModelManager
from screening.ai.local import LocalModelPredictor
from screening.ai.types import ModelStatus, PredictionResult, UploadedImage, validate_image_file
from screening.api.server import create_app


class _StubPredictor:
    def __init__(self) -> None:
        self.seen_paths: list[Path] = []
        self.existed_during_predict: list[bool] = []
        self.closed = False

    def initialize(self) -> ModelStatus:
        return self.get_model_status()

    def predict(self, image_path: str) -> PredictionResult:
        path = Path(image_path)
        self.seen_paths.append(path)
        self.existed_during_predict.append(path.exists())
        return PredictionResult(
            prediction="Non-anemic",
            confidence=0.87,
            using_default_prediction=False,
            model_source="cache",
        )

    def validate_image_file(self, upload: UploadedImage) -> list[str]:
        return validate_image_file(upload)

    def get_model_status(self) -> ModelStatus:
        return ModelStatus(
            is_loaded=True,
            load_attempts=0,
            max_attempts=3,
            is_loading=False,
            model_source="cache",
            cached=True,
            local_exists=False,
            input_names=("input",),
            output_names=("output",),
        )

    def retry_load_model(self) -> ModelStatus:
        return self.get_model_status()

    def clear_cache(self) -> dict:
        return {"success": True, "message": "Model cache cleared"}

    def close(self) -> None:
        self.closed = True


def _jpeg_bytes() -> bytes:
    rng = np.random.default_rng(11)
    pixels = rng.integers(0, 255, size=(128, 128, 3)).astype(np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


class ServerRoutesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.upload_dir = Path(self.tmp.name) / "uploads"
        self.predictor = _StubPredictor()
        self.app = create_app(self.predictor, upload_dir=self.upload_dir)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_predict_stores_upload_and_cleans_up(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/predict",
                files={"eyelid": ("eyelid.jpg", _jpeg_bytes(), "image/jpeg")},
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {
                "success": True,
                "prediction": "Non-anemic",
                "confidence": 0.87,
                "confidencePercentage": 87,
                "source": "cache",
                "usingDefault": False,
                "error": None,
            },
        )
        self.assertEqual(self.predictor.existed_during_predict, [True])
        self.assertEqual(self.predictor.seen_paths[0].suffix, ".jpg")
        self.assertFalse(self.predictor.seen_paths[0].exists())
        self.assertTrue(self.predictor.closed)

    def test_predict_rejects_unsupported_type(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/predict",
                files={"eyelid": ("notes.txt", b"x" * 4096, "text/plain")},
            )

        self.assertEqual(response.status_code, 400)
        detail = response.json()["detail"]
        self.assertEqual(detail["code"], "UPLOAD_REJECTED")
        self.assertTrue(any("Invalid file type" in error for error in detail["details"]))
        self.assertEqual(self.predictor.seen_paths, [])

    def test_predict_enforces_configured_upload_limit(self) -> None:
        app = create_app(self.predictor, upload_dir=self.upload_dir, max_upload_bytes=2048)

        with TestClient(app) as client:
            rejected = client.post(
                "/predict",
                files={"eyelid": ("eyelid.jpg", b"\xff\xd8" + b"x" * 4096, "image/jpeg")},
            )
            accepted = client.post(
                "/predict",
                files={"eyelid": ("eyelid.jpg", b"\xff\xd8" + b"x" * 1500, "image/jpeg")},
            )

        self.assertEqual(rejected.status_code, 400)
        details = rejected.json()["detail"]["details"]
        self.assertEqual(len(details), 1)
        self.assertIn("at most 2048 bytes", details[0])
        self.assertEqual(accepted.status_code, 200)
        self.assertEqual(len(self.predictor.seen_paths), 1)
        self.assertEqual(app.state.max_upload_bytes, 2048)

    def test_predict_without_file_is_rejected(self) -> None:
        with TestClient(self.app) as client:
            response = client.post("/predict")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "NO_FILE")

    def test_api_predict_response_shape(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/api/predict",
                files={"image": ("eye.jpg", _jpeg_bytes(), "image/jpeg")},
            )

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["prediction"]["result"], "Non-anemic")
        self.assertEqual(data["prediction"]["confidencePercentage"], 87)
        self.assertEqual(data["modelSource"], "cache")

    def test_model_management_endpoints(self) -> None:
        with TestClient(self.app) as client:
            status = client.get("/api/model-status").json()
            retried = client.post("/api/model/retry-load").json()
            cleared = client.post("/api/model/clear-cache").json()
            health = client.get("/health").json()

        self.assertEqual(
            set(status),
            {
                "isLoaded",
                "loadAttempts",
                "maxAttempts",
                "isLoading",
                "modelSource",
                "cached",
                "localExists",
                "inputNames",
                "outputNames",
            },
        )
        self.assertEqual(status["inputNames"], ["input"])
        self.assertTrue(retried["isLoaded"])
        self.assertEqual(cleared, {"success": True, "message": "Model cache cleared"})
        self.assertEqual(health["status"], "ok")
        self.assertEqual(health["model"]["status"], "loaded")

    def test_unloaded_local_model_serves_default_prediction(self) -> None:
        manager = ModelManager(
            cache_path=Path(self.tmp.name) / "cache.onnx",
            fallback_path=Path(self.tmp.name) / "bundled.onnx",
            model_url="",
            http=Mock(),
        )
        app = create_app(LocalModelPredictor(manager=manager), upload_dir=self.upload_dir)

        with TestClient(app) as client:
            response = client.post(
                "/predict",
                files={"eyelid": ("eyelid.jpg", _jpeg_bytes(), "image/jpeg")},
            )

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["prediction"], "Anemic")
        self.assertEqual(data["confidence"], 0.8)
        self.assertTrue(data["usingDefault"])
        self.assertEqual(data["source"], "none")


if __name__ == "__main__":
    unittest.main()
