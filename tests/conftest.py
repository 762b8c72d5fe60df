"""
Pytest configuration for LQO pipeline tests.

Fixes:
- Adds repo root to sys.path for import stability
- Non-interactive matplotlib backend for report tests
"""

import sys
from pathlib import Path

# Add repo root to path for imports
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root))

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest

SAMPLE_RATE = 48000


def make_music(duration_sec: float = 4.0, sr: int = SAMPLE_RATE, seed: int = 0) -> np.ndarray:
    """Harmonic tone under a smooth random loudness envelope."""
    rng = np.random.default_rng(seed)
    n = int(duration_sec * sr)
    t = np.arange(n) / sr

    tone = sum(np.sin(2 * np.pi * 220.0 * k * t) / k for k in range(1, 9))
    tone += 0.05 * rng.standard_normal(n)

    # Envelope knots every 100 ms
    knots = rng.uniform(0.1, 1.0, int(duration_sec * 10) + 2)
    envelope = np.interp(t, np.arange(knots.size) * 0.1, knots)
    audio = tone * envelope
    return 0.25 * audio / np.max(np.abs(audio))


def make_speech_like(duration_sec: float = 4.0, sr: int = SAMPLE_RATE, seed: int = 1) -> np.ndarray:
    """Voiced bursts (150 Hz harmonics) separated by short pauses."""
    rng = np.random.default_rng(seed)
    n = int(duration_sec * sr)
    t = np.arange(n) / sr

    voiced = sum(np.sin(2 * np.pi * 150.0 * k * t) / k for k in range(1, 16))
    gate = np.zeros(n)
    pos = int(0.1 * sr)
    while pos < n:
        length = int(rng.uniform(0.25, 0.5) * sr)
        gate[pos:pos + length] = np.hanning(len(gate[pos:pos + length]))
        pos += length + int(rng.uniform(0.05, 0.15) * sr)

    audio = voiced * gate + 0.002 * rng.standard_normal(n)
    return 0.25 * audio / np.max(np.abs(audio))


def add_noise(audio: np.ndarray, snr_db: float, seed: int = 7) -> np.ndarray:
    """White noise at the given SNR."""
    rng = np.random.default_rng(seed)
    noise = rng.standard_normal(audio.size)
    signal_power = np.mean(audio ** 2)
    noise_power = signal_power / (10 ** (snr_db / 10))
    return audio + noise * np.sqrt(noise_power / np.mean(noise ** 2))


@pytest.fixture
def music():
    """4 seconds of deterministic music-like audio at 48kHz."""
    return make_music()


@pytest.fixture
def speech():
    """4 seconds of deterministic speech-like audio at 48kHz."""
    return make_speech_like()
