from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from .preprocessing import PreprocessedTensor
from .types import ANEMIC, NON_ANEMIC, InferenceError

if TYPE_CHECKING:
    from .acquisition import ModelSession


logger = logging.getLogger(__name__)

DECISION_THRESHOLD = 0.5


@dataclass(frozen=True)
class InferenceOutcome:
    raw_score: float
    label: str
    confidence: float
    output_shape: tuple[int, ...]
    inference_time_ms: float


def interpret_score(score: float) -> tuple[str, float]:
    """Map the raw model score to a label.

    Confidence is the raw score on both sides of the threshold; the low branch
    is not rescaled to ``1 - score``.
    """
    if score > DECISION_THRESHOLD:
        return NON_ANEMIC, score
    return ANEMIC, score


def run_inference(session: "ModelSession", tensor: PreprocessedTensor) -> InferenceOutcome:
    if not session.input_names or not session.output_names:
        raise InferenceError("Model session does not declare inputs and outputs")
    input_name = session.input_names[0]
    output_name = session.output_names[0]

    started = time.perf_counter()
    try:
        outputs = session.run([output_name], {input_name: tensor.as_input()})
    except Exception as exc:
        raise InferenceError(f"Model execution failed: {exc}") from exc
    elapsed_ms = (time.perf_counter() - started) * 1000.0

    if not outputs:
        raise InferenceError(f"Model returned no value for output {output_name!r}")
    output = np.asarray(outputs[0])
    if output.size == 0:
        raise InferenceError(f"Output {output_name!r} is empty")
    raw_score = float(output.reshape(-1)[0])
    # The graph ends in a sigmoid; anything else means the wrong artifact.
    if not np.isfinite(raw_score) or not 0.0 <= raw_score <= 1.0:
        raise InferenceError(f"Output {output_name!r} is not a probability: {raw_score}")

    label, confidence = interpret_score(raw_score)
    logger.debug(
        "Inference finished label=%s raw=%.5f shape=%s elapsed_ms=%.1f",
        label,
        raw_score,
        output.shape,
        elapsed_ms,
    )
    return InferenceOutcome(
        raw_score=raw_score,
        label=label,
        confidence=confidence,
        output_shape=tuple(int(dim) for dim in output.shape),
        inference_time_ms=elapsed_ms,
    )


__all__ = ["DECISION_THRESHOLD", "InferenceOutcome", "interpret_score", "run_inference"]
