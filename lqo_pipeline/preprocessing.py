"""
Audio Preprocessing Module
==========================

Deterministic signal preparation ahead of neurogram analysis.

Features:
- WAV loading with mono downmix (channel mean)
- Resampling to the analysis rate (librosa)
- Input validation (empty / non-finite samples)
- Sound pressure level matching of degraded to reference

All operations are deterministic and logged.
"""

import numpy as np
import librosa
import soundfile as sf
from typing import Tuple
from dataclasses import dataclass
import logging

from .errors import InvalidInputSignalError

logger = logging.getLogger(__name__)


@dataclass
class LoadedPair:
    """Reference and degraded audio at a common sample rate"""
    reference: np.ndarray
    degraded: np.ndarray
    sample_rate: int
    reference_path: str
    degraded_path: str


def to_mono(audio) -> np.ndarray:
    """
    Reduce audio to a single channel float64 vector.

    2-D input is treated as (samples, channels) and averaged over channels.
    """
    audio = np.asarray(audio, dtype=np.float64)
    if audio.ndim == 2:
        if audio.shape[1] == 1:
            return audio[:, 0].copy()
        return audio.mean(axis=1)
    if audio.ndim != 1:
        raise InvalidInputSignalError(f"Expected 1-D or 2-D audio, got {audio.ndim}-D")
    return audio


def validate_signal(audio: np.ndarray, name: str) -> np.ndarray:
    """
    Check a mono signal is usable.

    Args:
        audio: Audio samples
        name: Signal name for error messages ('reference' / 'degraded')

    Returns:
        The signal as a 1-D float64 array

    Raises:
        InvalidInputSignalError: empty or non-finite signal
    """
    audio = to_mono(audio)
    if audio.size == 0:
        raise InvalidInputSignalError(f"The {name} signal is empty.")
    if not np.all(np.isfinite(audio)):
        raise InvalidInputSignalError(f"The {name} signal contains NaN or infinite samples.")
    return audio


def resample(audio: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
    """Resample to target_sr (no-op when rates match)"""
    if orig_sr == target_sr:
        return audio
    logger.debug(f"Resampling {len(audio)} samples {orig_sr}Hz -> {target_sr}Hz")
    return librosa.resample(audio, orig_sr=orig_sr, target_sr=target_sr)


def compute_rms(audio: np.ndarray) -> float:
    return float(np.sqrt(np.mean(audio ** 2))) if audio.size else 0.0


def match_sound_pressure_level(reference: np.ndarray, degraded: np.ndarray) -> np.ndarray:
    """
    Scale degraded so its RMS equals the reference RMS.

    A silent degraded signal is returned unchanged.
    """
    ref_rms = compute_rms(reference)
    deg_rms = compute_rms(degraded)
    if deg_rms == 0.0:
        logger.warning("Degraded signal is silent, skipping level matching")
        return degraded
    gain = ref_rms / deg_rms
    logger.debug(f"Level matching gain: {20 * np.log10(gain) if gain > 0 else -np.inf:.2f}dB")
    return degraded * gain


class AudioLoader:
    """
    Load reference/degraded WAV pairs for measurement.
    """

    def load_audio(self, filepath: str) -> Tuple[np.ndarray, int]:
        """
        Load audio file as mono at its native sample rate.

        Args:
            filepath: Path to audio file

        Returns:
            Tuple of (audio_array, sample_rate)
        """
        try:
            audio, sr = sf.read(filepath, dtype="float64", always_2d=True)
        except (RuntimeError, OSError) as e:
            logger.error(f"Failed to load {filepath}: {e}")
            raise

        if audio.shape[1] > 1:
            logger.debug(f"Downmixing {audio.shape[1]} channels to mono: {filepath}")
        mono = to_mono(audio)
        logger.debug(f"Loaded {filepath}: {len(mono)/sr:.2f}s @ {sr}Hz")
        return mono, int(sr)

    def load_pair(self, reference_path: str, degraded_path: str) -> LoadedPair:
        """
        Load a reference/degraded pair at the reference sample rate.

        The degraded file is resampled when its rate differs.
        """
        reference, ref_sr = self.load_audio(reference_path)
        degraded, deg_sr = self.load_audio(degraded_path)

        if deg_sr != ref_sr:
            logger.warning(f"Sample rate mismatch ({deg_sr}Hz vs {ref_sr}Hz), resampling degraded")
            degraded = resample(degraded, deg_sr, ref_sr)

        return LoadedPair(
            reference=reference,
            degraded=degraded,
            sample_rate=ref_sr,
            reference_path=str(reference_path),
            degraded_path=str(degraded_path),
        )
