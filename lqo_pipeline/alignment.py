"""
Audio Alignment Module
======================

Temporal alignment of degraded audio to the reference.

Two stages:
- Global: Hilbert-envelope cross-correlation removes the bulk codec delay
- Patch: each reference patch is matched to the best degraded patch in a
  bounded neighbourhood, monotonic in time

Features:
- Bounded search (no global search, no backtracking)
- Ties broken towards the smallest absolute lag
- Patches below a similarity floor are dropped, not force-matched
"""

import numpy as np
from scipy import fft, signal
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field
import logging

from .config import AnalysisConfig
from .patches import Patch

logger = logging.getLogger(__name__)

# Relative tolerance under which two correlation peaks count as equal
PEAK_TIE_TOLERANCE = 1e-9

# Patch similarities closer than this are ties (earlier lag wins)
SIMILARITY_TIE_TOLERANCE = 1e-12

# Envelope correlation below this is treated as "no reliable delay"
MIN_GLOBAL_CORRELATION = 0.05


@dataclass
class GlobalAlignmentResult:
    """Result of global signal alignment"""
    degraded: np.ndarray
    shift_samples: int
    shift_ms: float
    correlation_score: float

    def to_dict(self) -> Dict:
        return {
            "shift_samples": self.shift_samples,
            "shift_ms": self.shift_ms,
            "correlation_score": self.correlation_score,
        }


@dataclass(frozen=True)
class PatchMatch:
    """One aligned reference/degraded patch pair"""
    ref_index: int
    ref_frame: int
    deg_frame: int
    similarity: float

    @property
    def lag(self) -> int:
        return self.deg_frame - self.ref_frame


@dataclass
class PatchAlignment:
    """AlignmentMap plus the pairs used for scoring"""
    matches: List[PatchMatch] = field(default_factory=list)
    dropped: List[int] = field(default_factory=list)
    num_reference_patches: int = 0

    @property
    def alignment_map(self) -> Dict[int, Optional[int]]:
        """Reference patch index -> degraded start frame (None when dropped)"""
        mapping: Dict[int, Optional[int]] = {i: None for i in self.dropped}
        mapping.update({m.ref_index: m.deg_frame for m in self.matches})
        return dict(sorted(mapping.items()))

    def to_dict(self) -> Dict:
        return {
            "matched": len(self.matches),
            "dropped": len(self.dropped),
            "lags": [m.lag for m in self.matches],
        }


class GlobalAligner:
    """
    Coarse alignment by envelope cross-correlation.
    """

    def __init__(self, max_shift_ms: float = 1000.0):
        self.max_shift_ms = max_shift_ms

    @staticmethod
    def envelope(audio: np.ndarray) -> np.ndarray:
        """Hilbert envelope with the mean removed"""
        n = audio.size
        analytic = signal.hilbert(audio, N=fft.next_fast_len(n))[:n]
        env = np.abs(analytic)
        return env - env.mean()

    def cross_correlate(self, reference: np.ndarray,
                        degraded: np.ndarray,
                        sr: int) -> Tuple[int, float]:
        """
        Find the delay of degraded relative to reference.

        Args:
            reference: Reference audio array
            degraded: Degraded audio array
            sr: Sample rate for max_shift calculation

        Returns:
            Tuple of (shift_samples, correlation_score); positive shift
            means the degraded signal is delayed
        """
        max_shift = int(self.max_shift_ms * sr / 1000)

        ref_env = self.envelope(reference)
        deg_env = self.envelope(degraded)

        norm_factor = np.sqrt(np.sum(ref_env ** 2) * np.sum(deg_env ** 2))
        if norm_factor == 0:
            logger.debug("Flat envelope, no global shift")
            return 0, 0.0

        correlation = signal.correlate(deg_env, ref_env, mode="full", method="fft")
        lags = signal.correlation_lags(deg_env.size, ref_env.size, mode="full")

        in_range = np.abs(lags) <= max_shift
        correlation = correlation[in_range]
        lags = lags[in_range]

        peak = correlation.max()
        ties = np.flatnonzero(correlation >= peak - PEAK_TIE_TOLERANCE * abs(peak))
        best = ties[np.argmin(np.abs(lags[ties]))]
        shift = int(lags[best])
        corr_score = float(correlation[best] / norm_factor)

        if corr_score < MIN_GLOBAL_CORRELATION:
            logger.debug(f"Weak envelope correlation ({corr_score:.3f}), no global shift")
            return 0, corr_score

        logger.debug(f"Cross-correlation: shift={shift} samples, score={corr_score:.4f}")
        return shift, corr_score

    @staticmethod
    def apply_shift(degraded: np.ndarray, shift: int) -> np.ndarray:
        """
        Remove a delay from degraded.

        A delayed signal (shift > 0) is trimmed at the start; an early one
        (shift < 0) is zero-padded at the start.
        """
        if shift > 0:
            return degraded[shift:]
        if shift < 0:
            return np.concatenate([np.zeros(-shift), degraded])
        return degraded

    def align(self, reference: np.ndarray,
              degraded: np.ndarray,
              sr: int) -> GlobalAlignmentResult:
        shift, corr_score = self.cross_correlate(reference, degraded, sr)
        return GlobalAlignmentResult(
            degraded=self.apply_shift(degraded, shift),
            shift_samples=shift,
            shift_ms=shift * 1000 / sr,
            correlation_score=corr_score,
        )


def candidate_lags(radius: int) -> List[int]:
    """Lags in preference order: smallest |lag| first, negative before positive"""
    return sorted(range(-radius, radius + 1), key=lambda lag: (abs(lag), lag))


class PatchAligner:
    """
    Bounded, monotonic patch alignment.

    For reference patch i at frame r the degraded start d = r + lag is
    searched over |lag| <= radius, restricted to valid positions and to
    d >= the start chosen for the previous matched patch.
    """

    def __init__(self, analysis: AnalysisConfig):
        self.radius = analysis.SEARCH_WINDOW_RADIUS
        self.similarity_floor = analysis.PATCH_SIMILARITY_FLOOR
        self._lags = candidate_lags(self.radius)

    def align(self, reference_patches: Sequence[Patch],
              degraded_patches: np.ndarray,
              similarity: Callable[[np.ndarray, np.ndarray], float]) -> PatchAlignment:
        """
        Match reference patches to degraded patches.

        Args:
            reference_patches: Reference patches in time order
            degraded_patches: (positions, bands, frames) array indexed by
                              degraded start frame
            similarity: Patch similarity function (higher is better)

        Returns:
            PatchAlignment
        """
        result = PatchAlignment(num_reference_patches=len(reference_patches))
        num_positions = degraded_patches.shape[0]
        lower_bound = 0

        for i, patch in enumerate(reference_patches):
            best_frame = None
            best_sim = -np.inf

            for lag in self._lags:
                deg_frame = patch.start_frame + lag
                if deg_frame < lower_bound or deg_frame >= num_positions:
                    continue
                sim = similarity(patch.data, degraded_patches[deg_frame])
                if sim > best_sim + SIMILARITY_TIE_TOLERANCE:
                    best_sim = sim
                    best_frame = deg_frame

            if best_frame is None or best_sim < self.similarity_floor:
                logger.debug(f"Dropping reference patch {i} @ frame {patch.start_frame} "
                             f"(best similarity {best_sim:.3f})")
                result.dropped.append(i)
                continue

            result.matches.append(PatchMatch(
                ref_index=i,
                ref_frame=patch.start_frame,
                deg_frame=best_frame,
                similarity=float(best_sim),
            ))
            lower_bound = best_frame

        logger.debug(f"Patch alignment: {len(result.matches)} matched, {len(result.dropped)} dropped")
        return result
