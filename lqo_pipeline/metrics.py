"""
Similarity Metrics Module
=========================

Neurogram Similarity Index Measure (NSIM) between aligned patches.

NSIM combines an intensity term (local means) and a structure term
(local variances and covariance), each weighted by a 3x3 Gaussian window.
Values lie in [-1, 1]; 1.0 means identical.

Features:
- Per-patch similarity used by the patch aligner
- Per-band (fvnsim) and aggregate (vnsim) similarity
- Band coverage: bands silent in both signals are excluded from vnsim
"""

import numpy as np
from scipy import signal
from typing import Sequence, Tuple
from dataclasses import dataclass
import logging

from .spectrogram import Spectrogram

logger = logging.getLogger(__name__)


def gaussian_window(size: int = 3, sigma: float = 0.5) -> np.ndarray:
    """Normalised 2-D Gaussian kernel (MATLAB fspecial equivalent)"""
    half = (size - 1) / 2.0
    y, x = np.mgrid[-half:half + 1, -half:half + 1]
    window = np.exp(-(x * x + y * y) / (2.0 * sigma * sigma))
    return window / window.sum()


NSIM_WINDOW = gaussian_window()
NSIM_WINDOW.setflags(write=False)

INTENSITY_CONSTANT = 0.01
STRUCTURE_CONSTANT = 0.03


@dataclass(frozen=True)
class SimilarityVector:
    """Per-band and aggregate similarity of one measurement"""
    fvnsim: np.ndarray
    vnsim: float
    fstdnsim: np.ndarray
    fvdegenergy: np.ndarray
    band_coverage: np.ndarray
    excluded_bands: Tuple[int, ...]
    patch_similarities: np.ndarray

    @property
    def num_bands(self) -> int:
        return self.fvnsim.size


def intensity_range(reference: Spectrogram) -> float:
    """Dynamic range of the prepared reference; at least 1 dB"""
    if reference.data.size == 0:
        return 1.0
    return max(float(reference.data.max()), 1.0)


class NsimScorer:
    """
    NSIM scorer for one measurement.

    Holds only the stabilising constants derived from the intensity range.
    """

    def __init__(self, intensity_range: float = 1.0):
        L = max(float(intensity_range), 1.0)
        self.c1 = (INTENSITY_CONSTANT * L) ** 2
        self.c3 = (STRUCTURE_CONSTANT * L) ** 2 / 2

    @staticmethod
    def _filter(values: np.ndarray) -> np.ndarray:
        return signal.convolve2d(values, NSIM_WINDOW, mode="same", boundary="fill")

    def similarity_map(self, reference: np.ndarray, degraded: np.ndarray) -> np.ndarray:
        """
        Cell-wise NSIM of two equally shaped (bands, frames) arrays.

        Returns:
            Array of the same shape, clipped to [-1, 1]
        """
        if reference.shape != degraded.shape:
            raise ValueError(f"Patch shapes differ: {reference.shape} vs {degraded.shape}")

        mu_r = self._filter(reference)
        mu_d = self._filter(degraded)
        mu_r_sq = mu_r * mu_r
        mu_d_sq = mu_d * mu_d
        mu_r_mu_d = mu_r * mu_d

        sigma_r_sq = self._filter(reference * reference) - mu_r_sq
        sigma_d_sq = self._filter(degraded * degraded) - mu_d_sq
        sigma_rd = self._filter(reference * degraded) - mu_r_mu_d

        sigma_r = np.sqrt(np.maximum(sigma_r_sq, 0.0))
        sigma_d = np.sqrt(np.maximum(sigma_d_sq, 0.0))

        intensity = (2 * mu_r_mu_d + self.c1) / (mu_r_sq + mu_d_sq + self.c1)
        structure = (sigma_rd + self.c3) / (sigma_r * sigma_d + self.c3)
        return np.clip(intensity * structure, -1.0, 1.0)

    def band_means(self, reference: np.ndarray, degraded: np.ndarray) -> np.ndarray:
        """Mean NSIM over time for every band"""
        return self.similarity_map(reference, degraded).mean(axis=1)

    def patch_similarity(self, reference: np.ndarray, degraded: np.ndarray) -> float:
        """Scalar similarity of two patches (mean over bands)"""
        return float(self.band_means(reference, degraded).mean())

    def score(self, pairs: Sequence[Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]]
              ) -> SimilarityVector:
        """
        Aggregate similarity over aligned patch pairs.

        Args:
            pairs: (reference, degraded, reference_floor_mask, degraded_floor_mask)
                   per aligned pair, each (bands, frames)

        Returns:
            SimilarityVector
        """
        if not pairs:
            raise ValueError("No aligned patch pairs to score")

        num_bands = pairs[0][0].shape[0]
        band_sims = np.empty((len(pairs), num_bands))
        covered = np.empty((len(pairs), num_bands), dtype=bool)
        deg_energy = np.empty((len(pairs), num_bands))

        for i, (ref, deg, ref_mask, deg_mask) in enumerate(pairs):
            band_sims[i] = self.band_means(ref, deg)
            covered[i] = ~(ref_mask.all(axis=1) & deg_mask.all(axis=1))
            deg_energy[i] = deg.mean(axis=1)

        coverage = covered.sum(axis=0)
        fvnsim = np.ones(num_bands)
        fstdnsim = np.zeros(num_bands)
        for band in np.flatnonzero(coverage):
            values = band_sims[covered[:, band], band]
            fvnsim[band] = values.mean()
            fstdnsim[band] = values.std()

        excluded = tuple(int(b) for b in np.flatnonzero(coverage == 0))
        if len(excluded) < num_bands:
            vnsim = float(fvnsim[coverage > 0].mean())
        else:
            vnsim = float(fvnsim.mean())

        if excluded:
            logger.debug(f"Bands excluded from vnsim (silent in both signals): {list(excluded)}")

        return SimilarityVector(
            fvnsim=fvnsim,
            vnsim=vnsim,
            fstdnsim=fstdnsim,
            fvdegenergy=deg_energy.mean(axis=0),
            band_coverage=coverage,
            excluded_bands=excluded,
            patch_similarities=band_sims.mean(axis=1),
        )
