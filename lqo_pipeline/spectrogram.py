"""
Gammatone Spectrogram Module
============================

Time-frequency transform producing a per-band energy "neurogram".

Features:
- ERB-spaced 4th-order gammatone filterbank (four cascaded biquads, pyACA coefficients)
- 80 ms windows with 50% overlap; trailing partial window discarded
- dB conversion with absolute and per-frame relative noise floors
- Floor mask tracking which cells carry no signal

Bands are ordered from lowest to highest centre frequency.
"""

import numpy as np
from scipy import signal
from pyACA.ToolGammatoneFb import getCoeffs
from typing import Tuple
from dataclasses import dataclass, replace
import logging

from .config import AnalysisConfig

logger = logging.getLogger(__name__)

# Glasberg & Moore ERB parameters
EAR_Q = 9.26449
MIN_BW = 24.7
ERB_ORDER = 1

_POWER_EPS = 1e-20


@dataclass(frozen=True)
class Spectrogram:
    """Per-band energy in dB, shape (bands, frames)"""
    data: np.ndarray
    floor_mask: np.ndarray
    center_freqs: np.ndarray
    sample_rate: int
    window_samples: int
    hop_samples: int

    @property
    def num_bands(self) -> int:
        return self.data.shape[0]

    @property
    def num_frames(self) -> int:
        return self.data.shape[1]

    def frame_start_time(self, frame: int) -> float:
        return frame * self.hop_samples / self.sample_rate

    def frame_end_time(self, frame: int) -> float:
        """End time (seconds) of the window starting at frame"""
        return (frame * self.hop_samples + self.window_samples) / self.sample_rate


def num_frames(num_samples: int, window: int, hop: int) -> int:
    """Number of complete analysis windows in num_samples"""
    if num_samples < window:
        return 0
    return 1 + (num_samples - window) // hop


def erb_space(low_freq: float, high_freq: float, num_bands: int) -> np.ndarray:
    """
    Centre frequencies uniformly spaced on the ERB scale.

    Returns:
        Ascending array; first entry is low_freq
    """
    ear = EAR_Q * MIN_BW
    steps = np.arange(1, num_bands + 1)
    cfs = -ear + np.exp(
        steps * (-np.log(high_freq + ear) + np.log(low_freq + ear)) / num_bands
    ) * (high_freq + ear)
    return cfs[::-1]


def make_erb_filters(sample_rate: int, center_freqs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gammatone filter coefficients (Slaney's MakeERBFilters, via pyACA).

    Args:
        sample_rate: Sample rate in Hz
        center_freqs: Centre frequencies in Hz

    Returns:
        Tuple of (b, a), each shaped (4 biquads, 3 taps, bands), gain
        normalisation folded into the first biquad
    """
    cf = np.asarray(center_freqs, dtype=np.float64)
    erb = ((cf / EAR_Q) ** ERB_ORDER + MIN_BW ** ERB_ORDER) ** (1.0 / ERB_ORDER)
    bandwidths = 1.019 * 2 * np.pi * erb
    coef_b, coef_a = getCoeffs(cf, bandwidths, 1.0 / sample_rate)
    return np.asarray(coef_b, dtype=np.float64), np.asarray(coef_a, dtype=np.float64)


class GammatoneSpectrogramBuilder:
    """
    Build gammatone spectrograms for one analysis configuration.

    Filter coefficients are computed once; build() keeps no state,
    so one builder can serve concurrent measurements.
    """

    def __init__(self, analysis: AnalysisConfig, sample_rate: int):
        self.analysis = analysis
        self.sample_rate = sample_rate
        self.window = analysis.window_samples(sample_rate)
        self.hop = analysis.hop_samples(sample_rate)

        max_freq = min(analysis.MAX_FREQ_HZ,
                       analysis.MAX_FREQ_NYQUIST_RATIO * sample_rate / 2)
        if max_freq < analysis.MAX_FREQ_HZ:
            # Expected for fixed-rate modes
            log = logger.debug if analysis.TARGET_SAMPLE_RATE == sample_rate else logger.warning
            log(f"Top band clamped to {max_freq:.0f}Hz for {sample_rate}Hz input")

        self.center_freqs = erb_space(analysis.MIN_FREQ_HZ, max_freq, analysis.NUM_BANDS)
        self.center_freqs.setflags(write=False)
        self._coef_b, self._coef_a = make_erb_filters(sample_rate, self.center_freqs)
        self._coef_b.setflags(write=False)
        self._coef_a.setflags(write=False)

        logger.debug(f"Gammatone builder: {analysis.NUM_BANDS} bands "
                     f"{self.center_freqs[0]:.0f}-{self.center_freqs[-1]:.0f}Hz, "
                     f"window={self.window}, hop={self.hop}")

    def filter(self, audio: np.ndarray) -> np.ndarray:
        """Filter audio through every band; returns (bands, samples)"""
        out = np.empty((self.center_freqs.size, audio.size))
        for k in range(self.center_freqs.size):
            y = audio
            for stage in range(self._coef_b.shape[0]):
                y = signal.lfilter(self._coef_b[stage, :, k], self._coef_a[stage, :, k], y)
            out[k] = y
        return out

    def frame_energy(self, filtered: np.ndarray) -> np.ndarray:
        """Mean-square energy per (band, frame); partial window dropped"""
        frames = num_frames(filtered.shape[1], self.window, self.hop)
        if frames == 0:
            return np.zeros((filtered.shape[0], 0))

        squared = np.cumsum(filtered ** 2, axis=1)
        squared = np.concatenate([np.zeros((filtered.shape[0], 1)), squared], axis=1)
        starts = np.arange(frames) * self.hop
        energy = (squared[:, starts + self.window] - squared[:, starts]) / self.window
        return np.maximum(energy, 0.0)

    def build(self, audio: np.ndarray) -> Spectrogram:
        """
        Compute the dB spectrogram of a mono signal.

        Args:
            audio: Mono samples at self.sample_rate

        Returns:
            Spectrogram with the absolute floor applied
        """
        energy = self.frame_energy(self.filter(audio))
        data = 10 * np.log10(np.maximum(energy, _POWER_EPS))

        floor = self.analysis.ABSOLUTE_FLOOR_DB
        mask = data <= floor
        data = np.maximum(data, floor)

        logger.debug(f"Spectrogram: {data.shape[0]} bands x {data.shape[1]} frames")
        return Spectrogram(
            data=data,
            floor_mask=mask,
            center_freqs=self.center_freqs,
            sample_rate=self.sample_rate,
            window_samples=self.window,
            hop_samples=self.hop,
        )


def prepare_for_comparison(reference: Spectrogram,
                           degraded: Spectrogram,
                           relative_floor_db: float) -> Tuple[Spectrogram, Spectrogram]:
    """
    Apply the joint per-frame floor and shift both to a common zero floor.

    Each frame is floored relative_floor_db below the louder of the
    reference/degraded frames at the same index. Both spectrograms are then
    shifted by their common minimum so the noise floor sits at 0 dB.

    Args:
        reference: Reference spectrogram
        degraded: Degraded spectrogram
        relative_floor_db: Dynamic range kept below each frame's peak

    Returns:
        Tuple of (reference, degraded) ready for patch comparison
    """
    if reference.num_frames == 0 or degraded.num_frames == 0:
        raise ValueError("Cannot compare empty spectrograms")

    ref_peak = reference.data.max(axis=0)
    deg_peak = degraded.data.max(axis=0)
    shared = min(ref_peak.size, deg_peak.size)
    joint = np.maximum(ref_peak[:shared], deg_peak[:shared])

    ref_floor = ref_peak - relative_floor_db
    deg_floor = deg_peak - relative_floor_db
    ref_floor[:shared] = joint - relative_floor_db
    deg_floor[:shared] = joint - relative_floor_db

    ref_mask = reference.floor_mask | (reference.data <= ref_floor[np.newaxis, :])
    deg_mask = degraded.floor_mask | (degraded.data <= deg_floor[np.newaxis, :])
    ref_data = np.maximum(reference.data, ref_floor[np.newaxis, :])
    deg_data = np.maximum(degraded.data, deg_floor[np.newaxis, :])

    lowest = min(ref_data.min(), deg_data.min())
    ref_data = ref_data - lowest
    deg_data = deg_data - lowest

    return (replace(reference, data=ref_data, floor_mask=ref_mask),
            replace(degraded, data=deg_data, floor_mask=deg_mask))
