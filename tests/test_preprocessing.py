"""
Audio loading and signal preparation tests.

- Stereo files are averaged to mono
- A degraded file at another rate comes back at the reference rate
- Level matching and signal validation
"""

import numpy as np
import pytest
import soundfile as sf

from conftest import SAMPLE_RATE, make_music
from lqo_pipeline.errors import InvalidInputSignalError
from lqo_pipeline.preprocessing import (
    AudioLoader,
    compute_rms,
    match_sound_pressure_level,
    validate_signal,
)


def test_load_audio_downmixes_stereo(tmp_path):
    left = np.full(1000, 0.5)
    right = np.full(1000, -0.25)
    sf.write(tmp_path / "stereo.wav", np.stack([left, right], axis=1), SAMPLE_RATE,
             subtype="FLOAT")

    audio, sr = AudioLoader().load_audio(str(tmp_path / "stereo.wav"))
    assert sr == SAMPLE_RATE
    assert audio.ndim == 1
    assert np.allclose(audio, 0.125)


def test_load_pair_resamples_degraded_to_reference_rate(tmp_path):
    music = make_music(duration_sec=1.0)
    low_rate = 24000
    sf.write(tmp_path / "ref.wav", music, SAMPLE_RATE)
    sf.write(tmp_path / "deg.wav", music[::2], low_rate)

    pair = AudioLoader().load_pair(str(tmp_path / "ref.wav"), str(tmp_path / "deg.wav"))
    assert pair.sample_rate == SAMPLE_RATE
    assert abs(pair.degraded.size - pair.reference.size) <= 2
    assert pair.degraded_path == str(tmp_path / "deg.wav")


def test_match_sound_pressure_level():
    reference = np.sin(np.linspace(0, 100, 4800))
    degraded = 0.1 * reference
    matched = match_sound_pressure_level(reference, degraded)
    assert compute_rms(matched) == pytest.approx(compute_rms(reference))

    silent = np.zeros(4800)
    assert np.array_equal(match_sound_pressure_level(reference, silent), silent)


def test_validate_signal_rejects_empty_and_non_finite():
    with pytest.raises(InvalidInputSignalError, match="empty"):
        validate_signal(np.array([]), "reference")
    with pytest.raises(InvalidInputSignalError, match="NaN"):
        validate_signal(np.array([0.0, np.nan]), "degraded")
