"""
Gammatone spectrogram tests.

- ERB-spaced, ascending band layout
- Framing drops the trailing partial window
- Floors and masks
"""

import logging

import numpy as np
import pytest

from lqo_pipeline.config import AUDIO_ANALYSIS, SPEECH_ANALYSIS
from lqo_pipeline.spectrogram import (
    GammatoneSpectrogramBuilder,
    erb_space,
    make_erb_filters,
    num_frames,
    prepare_for_comparison,
)


def test_num_frames_discards_partial_window():
    assert num_frames(3840, 3840, 1920) == 1
    assert num_frames(3840 + 1920 + 960, 3840, 1920) == 2
    assert num_frames(3839, 3840, 1920) == 0
    assert num_frames(192000, 3840, 1920) == 99


def test_erb_space_ascending_from_low_freq():
    cfs = erb_space(50.0, 15000.0, 32)
    assert cfs.size == 32
    assert np.all(np.diff(cfs) > 0), "Bands must be ordered low to high"
    assert abs(cfs[0] - 50.0) < 1e-6
    assert cfs[-1] < 15000.0


def test_filter_coefficient_shape():
    coef_b, coef_a = make_erb_filters(48000, erb_space(50.0, 15000.0, 32))
    assert coef_b.shape == (4, 3, 32)
    assert coef_a.shape == (4, 3, 32)
    # Denominators are monic biquads
    assert np.all(coef_a[:, 0, :] == 1.0)
    assert np.all(np.isfinite(coef_b))


def test_builder_frames_and_shape():
    builder = GammatoneSpectrogramBuilder(AUDIO_ANALYSIS, 48000)
    audio = np.random.default_rng(0).standard_normal(3840 + 1920 + 960) * 0.1
    spec = builder.build(audio)
    assert spec.data.shape == (32, 2)
    assert spec.floor_mask.shape == spec.data.shape
    assert np.all(np.diff(spec.center_freqs) > 0)


def test_tone_energy_peaks_near_its_frequency():
    sr = 48000
    t = np.arange(sr) / sr
    tone = 0.5 * np.sin(2 * np.pi * 1000.0 * t)

    builder = GammatoneSpectrogramBuilder(AUDIO_ANALYSIS, sr)
    spec = builder.build(tone)
    loudest = int(np.argmax(spec.data.mean(axis=1)))
    cf = spec.center_freqs[loudest]
    assert 800.0 < cf < 1250.0, f"Loudest band at {cf:.0f}Hz for a 1kHz tone"


def test_silence_is_fully_floored():
    builder = GammatoneSpectrogramBuilder(AUDIO_ANALYSIS, 48000)
    spec = builder.build(np.zeros(48000))
    assert np.all(spec.floor_mask)
    assert np.all(spec.data == AUDIO_ANALYSIS.ABSOLUTE_FLOOR_DB)


def test_top_band_clamped_below_nyquist(caplog):
    with caplog.at_level(logging.DEBUG, logger="lqo_pipeline.spectrogram"):
        builder = GammatoneSpectrogramBuilder(AUDIO_ANALYSIS, 16000)
    assert builder.center_freqs[-1] < 0.95 * 8000
    assert any(r.levelno == logging.WARNING and "clamped" in r.getMessage() for r in caplog.records)


def test_speech_clamp_is_not_a_warning(caplog):
    with caplog.at_level(logging.DEBUG, logger="lqo_pipeline.spectrogram"):
        builder = GammatoneSpectrogramBuilder(SPEECH_ANALYSIS, 16000)
    assert builder.center_freqs[-1] < 0.95 * 8000
    clamp_records = [r for r in caplog.records if "clamped" in r.getMessage()]
    assert clamp_records
    assert all(r.levelno == logging.DEBUG for r in clamp_records)


def test_builder_state_is_read_only():
    builder = GammatoneSpectrogramBuilder(SPEECH_ANALYSIS, 16000)
    with pytest.raises(ValueError):
        builder.center_freqs[0] = 1.0


def test_prepare_for_comparison_shifts_to_zero_floor():
    builder = GammatoneSpectrogramBuilder(AUDIO_ANALYSIS, 48000)
    rng = np.random.default_rng(1)
    ref = builder.build(rng.standard_normal(48000) * 0.1)
    deg = builder.build(rng.standard_normal(48000) * 0.01)

    ref_p, deg_p = prepare_for_comparison(ref, deg, AUDIO_ANALYSIS.RELATIVE_FLOOR_DB)
    lowest = min(ref_p.data.min(), deg_p.data.min())
    assert abs(lowest) < 1e-9, "Common floor must sit at 0 dB"

    # Joint floor: every frame spans at most the relative floor below its peak
    joint_peak = np.maximum(ref_p.data.max(axis=0), deg_p.data.max(axis=0))
    joint_min = np.minimum(ref_p.data.min(axis=0), deg_p.data.min(axis=0))
    assert np.all(joint_peak - joint_min <= AUDIO_ANALYSIS.RELATIVE_FLOOR_DB + 1e-9)

    # Floored cells stay masked
    assert np.all(ref_p.floor_mask >= ref.floor_mask)


def test_prepare_for_comparison_rejects_empty():
    builder = GammatoneSpectrogramBuilder(AUDIO_ANALYSIS, 48000)
    empty = builder.build(np.zeros(100))
    full = builder.build(np.zeros(48000))
    with pytest.raises(ValueError):
        prepare_for_comparison(empty, full, 45.0)
