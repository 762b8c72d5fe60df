"""
Quality Mapping Module
======================

Maps similarity to MOS-LQO.

- AUDIO: trained regression model over the per-band similarity vector
- SPEECH_SCALED: exponential fit over vnsim, rescaled so vnsim=1 -> 5.0
- SPEECH_UNSCALED: the same fit without rescaling (vnsim=1 -> ~4.23)

Every score is clamped to [1.0, 5.0].
"""

import math
import logging

import numpy as np

from .config import ScoringMode
from .metrics import SimilarityVector
from .model import MappingModel

logger = logging.getLogger(__name__)

MOS_MIN = 1.0
MOS_MAX = 5.0

# Exponential fit of vnsim against subjective speech MOS
SPEECH_FIT_A = 1.155945
SPEECH_FIT_B = 4.68238
SPEECH_FIT_X0 = 0.76


def clamp_mos(score: float) -> float:
    return float(min(max(score, MOS_MIN), MOS_MAX))


def speech_unscaled_mos(vnsim: float) -> float:
    """a + exp(b * (vnsim - x0)), before clamping"""
    return SPEECH_FIT_A + math.exp(SPEECH_FIT_B * (vnsim - SPEECH_FIT_X0))


SPEECH_SCALE = MOS_MAX / speech_unscaled_mos(1.0)


def speech_scaled_mos(vnsim: float) -> float:
    """Unscaled fit stretched so perfect similarity reaches MOS_MAX"""
    return speech_unscaled_mos(vnsim) * SPEECH_SCALE


class QualityMapper:
    """
    Similarity-to-quality mapping for one scoring mode.

    The mode is fixed at construction; the model is only consulted in
    AUDIO mode and is never mutated.
    """

    def __init__(self, mode: ScoringMode, model: MappingModel = None):
        if mode is ScoringMode.AUDIO and model is None:
            raise ValueError("Audio scoring requires a mapping model")
        self.mode = mode
        self.model = model

    def raw_score(self, similarity: SimilarityVector) -> float:
        if self.mode is ScoringMode.AUDIO:
            return self.model.predict(np.asarray(similarity.fvnsim))
        if self.mode is ScoringMode.SPEECH_SCALED:
            return speech_scaled_mos(similarity.vnsim)
        return speech_unscaled_mos(similarity.vnsim)

    def predict(self, similarity: SimilarityVector) -> float:
        """
        Map a similarity vector to MOS-LQO.

        Args:
            similarity: SimilarityVector from the NSIM scorer

        Returns:
            MOS-LQO in [1.0, 5.0]
        """
        raw = self.raw_score(similarity)
        if not math.isfinite(raw):
            raise ValueError(f"Quality mapping produced a non-finite score: {raw}")
        mos = clamp_mos(raw)
        logger.debug(f"Mapped ({self.mode.value}) vnsim={similarity.vnsim:.5f} -> raw={raw:.5f}, moslqo={mos:.5f}")
        return mos
