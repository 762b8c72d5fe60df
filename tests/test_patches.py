"""
Patch creation tests.

- Reference patches: non-overlapping, start half a patch in, fit entirely
- Speech VAD keeps voice-active patches and falls back to all
- Degraded patches: every start frame, read-only view
"""

import numpy as np

from lqo_pipeline.config import AUDIO_ANALYSIS, SPEECH_ANALYSIS
from lqo_pipeline.patches import (
    ImagePatchCreator,
    VadPatchCreator,
    create_patch_creator,
    sliding_patches,
)
from lqo_pipeline.spectrogram import Spectrogram, erb_space, num_frames

SPEECH_SR = 16000
SPEECH_WINDOW = 1280
SPEECH_HOP = 640


def make_spectrogram(frames: int, bands: int = 32) -> Spectrogram:
    data = np.arange(bands * frames, dtype=np.float64).reshape(bands, frames)
    return Spectrogram(
        data=data,
        floor_mask=np.zeros_like(data, dtype=bool),
        center_freqs=erb_space(50.0, 7600.0, bands),
        sample_rate=SPEECH_SR,
        window_samples=SPEECH_WINDOW,
        hop_samples=SPEECH_HOP,
    )


def test_reference_patch_start_frames():
    creator = ImagePatchCreator(30, AUDIO_ANALYSIS.first_patch_frame())
    assert creator.patch_start_frames(99) == [14, 44]
    assert creator.patch_start_frames(44) == [14]
    assert creator.patch_start_frames(43) == []


def test_reference_patches_slice_spectrogram():
    spec = make_spectrogram(100)
    patches = ImagePatchCreator(20, 9).create_reference_patches(spec)
    assert [p.start_frame for p in patches] == [9, 29, 49, 69]
    for patch in patches:
        assert patch.data.shape == (32, 20)
        assert np.array_equal(patch.data, spec.data[:, patch.start_frame:patch.start_frame + 20])


def test_factory_selects_vad_for_speech():
    assert isinstance(create_patch_creator(SPEECH_ANALYSIS), VadPatchCreator)
    creator = create_patch_creator(AUDIO_ANALYSIS)
    assert not isinstance(creator, VadPatchCreator)
    assert creator.patch_size == 30


def test_vad_drops_silent_patches():
    """Noise for 2.5s then silence: only patches in the active region survive."""
    rng = np.random.default_rng(0)
    audio = np.zeros(96000)
    audio[:40000] = rng.uniform(-0.5, 0.5, 40000)

    frames = num_frames(audio.size, SPEECH_WINDOW, SPEECH_HOP)
    spec = make_spectrogram(frames)
    creator = VadPatchCreator(20, 9)

    assert len(ImagePatchCreator(20, 9).create_reference_patches(spec)) == 7
    patches = creator.create_reference_patches(spec, audio)
    assert [p.start_frame for p in patches] == [9, 29, 49]
    assert [p.index for p in patches] == [0, 1, 2], "Kept patches are re-indexed"


def test_vad_falls_back_to_all_patches():
    """A single click before the first patch leaves no active patch."""
    audio = np.zeros(96000)
    audio[:100] = 0.9

    spec = make_spectrogram(num_frames(audio.size, SPEECH_WINDOW, SPEECH_HOP))
    patches = VadPatchCreator(20, 9).create_reference_patches(spec, audio)
    assert len(patches) == 7


def test_sliding_patches_view():
    values = np.arange(4 * 50, dtype=np.float64).reshape(4, 50)
    view = sliding_patches(values, 20)
    assert view.shape == (31, 4, 20)
    assert np.array_equal(view[7], values[:, 7:27])
    assert not view.flags.writeable


def test_sliding_patches_too_short():
    view = sliding_patches(np.zeros((4, 10)), 20)
    assert view.shape == (0, 4, 20)
