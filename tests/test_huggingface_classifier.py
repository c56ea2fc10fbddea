import base64
import random
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

import requests

from screening.ai.acquisition import ModelManager
from screening.ai.huggingface_client import HuggingFaceImageClassifier
from screening.ai.local import LocalModelPredictor


def _response(status: int, payload=None) -> Mock:
    response = Mock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.json.return_value = payload
    return response


class HuggingFaceImageClassifierTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.image_path = Path(self.tmp.name) / "eyelid.jpg"
        self.image_bytes = b"\xff\xd8fake-jpeg" * 200
        self.image_path.write_bytes(self.image_bytes)
        self.session = Mock()

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _loaded_classifier(self) -> HuggingFaceImageClassifier:
        self.session.get.return_value = _response(200, {"id": "eyelid-anemia-classifier"})
        classifier = HuggingFaceImageClassifier(
            api_token="hf-test",
            session=self.session,
            rng=random.Random(3),
        )
        classifier.initialize()
        return classifier

    def test_initialize_without_token_uses_weighted_fallback(self) -> None:
        classifier = HuggingFaceImageClassifier(
            api_token=None, session=self.session, rng=random.Random(1)
        )

        status = classifier.initialize()
        result = classifier.predict(str(self.image_path))

        self.assertFalse(status.is_loaded)
        self.session.get.assert_not_called()
        self.session.post.assert_not_called()
        self.assertTrue(result.using_default_prediction)
        self.assertEqual(result.model_source, "intelligent_fallback")
        self.assertIn(result.prediction, {"Anemic", "Non-anemic"})
        self.assertGreaterEqual(result.confidence, 0.75)
        self.assertLessEqual(result.confidence, 0.90)

    def test_initialize_checks_repository_access(self) -> None:
        classifier = self._loaded_classifier()

        self.assertTrue(classifier.get_model_status().is_loaded)
        url = self.session.get.call_args.args[0]
        self.assertTrue(url.endswith("/api/models/eyelid-anemia-classifier"))
        headers = self.session.get.call_args.kwargs["headers"]
        self.assertEqual(headers["Authorization"], "Bearer hf-test")

    def test_direct_inference_result_is_interpreted(self) -> None:
        classifier = self._loaded_classifier()
        self.session.post.return_value = _response(
            200, [{"label": "Anemic", "score": 0.9134}, {"label": "Non-anemic", "score": 0.0866}]
        )

        result = classifier.predict(str(self.image_path))

        self.assertEqual(result.prediction, "Anemic")
        self.assertEqual(result.confidence, 0.91)
        self.assertFalse(result.using_default_prediction)
        self.assertEqual(result.model_source, "huggingface_inference")
        payload = self.session.post.call_args.kwargs["json"]
        self.assertEqual(payload, {"inputs": base64.b64encode(self.image_bytes).decode("ascii")})

    def test_negated_label_maps_to_non_anemic(self) -> None:
        classifier = self._loaded_classifier()
        self.session.post.return_value = _response(200, [{"label": "Non-anemic", "score": 0.66}])

        result = classifier.predict(str(self.image_path))

        self.assertEqual(result.prediction, "Non-anemic")
        self.assertEqual(result.confidence, 0.66)

    def test_warming_up_model_falls_back_to_proxy(self) -> None:
        classifier = self._loaded_classifier()
        self.session.post.side_effect = [
            _response(503, {"error": "Model is currently loading"}),
            _response(200, [{"label": "pale skin", "score": 0.9}, {"label": "red wine", "score": 0.1}]),
        ]

        result = classifier.predict(str(self.image_path))

        self.assertEqual(self.session.post.call_count, 2)
        self.assertTrue(self.session.post.call_args.args[0].endswith("microsoft/resnet-50"))
        self.assertEqual(result.prediction, "Anemic")
        self.assertEqual(result.model_source, "proxy_analysis")
        self.assertAlmostEqual(result.confidence, 0.6)

    def test_proxy_without_pallor_signals_is_non_anemic(self) -> None:
        classifier = self._loaded_classifier()
        self.session.post.side_effect = [
            requests.ConnectionError("down"),
            _response(200, [{"label": "healthy tissue", "score": 0.95}]),
        ]

        result = classifier.predict(str(self.image_path))

        self.assertEqual(result.prediction, "Non-anemic")
        self.assertGreaterEqual(result.confidence, 0.6)
        self.assertLessEqual(result.confidence, 0.9)

    def test_all_remote_calls_failing_returns_flagged_placeholder(self) -> None:
        classifier = self._loaded_classifier()
        self.session.post.side_effect = [_response(500), requests.Timeout("slow")]

        result = classifier.predict(str(self.image_path))

        self.assertTrue(result.using_default_prediction)
        self.assertEqual(result.model_source, "error_fallback")
        self.assertEqual(result.error, "All approaches failed")
        self.assertGreaterEqual(result.confidence, 0.70)
        self.assertLessEqual(result.confidence, 0.85)

    def test_cache_and_retry_operations(self) -> None:
        classifier = self._loaded_classifier()

        self.assertEqual(
            classifier.clear_cache(),
            {"success": True, "message": "No cache to clear for API-based model"},
        )
        status = classifier.retry_load_model()
        self.assertTrue(status.is_loaded)
        self.assertEqual(status.load_attempts, 2)

    def test_repeated_retries_never_exceed_reported_maximum(self) -> None:
        classifier = self._loaded_classifier()
        self.assertEqual(classifier.get_model_status().max_attempts, 1)

        for _ in range(3):
            classifier.retry_load_model()

        status = classifier.get_model_status()
        self.assertEqual(status.load_attempts, 4)
        self.assertLessEqual(status.load_attempts, status.max_attempts)
        self.assertEqual(status.to_dict()["maxAttempts"], 4)

    def test_status_shape_matches_local_backend(self) -> None:
        remote = self._loaded_classifier()
        self.session.post.return_value = _response(200, [{"label": "Anemic", "score": 0.8}])
        local = LocalModelPredictor(
            manager=ModelManager(
                cache_path=Path(self.tmp.name) / "cache.onnx",
                fallback_path=Path(self.tmp.name) / "bundled.onnx",
                model_url="",
                http=Mock(),
            )
        )

        self.assertEqual(
            set(remote.get_model_status().to_dict()),
            set(local.get_model_status().to_dict()),
        )
        self.assertEqual(
            set(remote.predict(str(self.image_path)).to_dict()) - {"error"},
            set(local.predict(str(self.image_path)).to_dict()) - {"error"},
        )


if __name__ == "__main__":
    unittest.main()
