"""
Patch Creation Module
=====================

Cuts spectrograms into fixed-size (bands x frames) patches.

- Reference patches are non-overlapping, starting half a patch in
- Speech mode keeps only voice-active reference patches (energy VAD)
- Degraded patches are every start frame, as a read-only sliding view
"""

import numpy as np
import librosa
from typing import List
from dataclasses import dataclass
import logging

from .config import AnalysisConfig
from .spectrogram import Spectrogram

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Patch:
    """Windowed per-band energy of one signal segment"""
    index: int
    start_frame: int
    data: np.ndarray
    floor_mask: np.ndarray

    @property
    def num_frames(self) -> int:
        return self.data.shape[1]


class ImagePatchCreator:
    """
    Non-overlapping reference patches.
    """

    def __init__(self, patch_size: int, first_frame: int = 0):
        if patch_size <= 0:
            raise ValueError(f"patch_size must be positive, got {patch_size}")
        self.patch_size = patch_size
        self.first_frame = first_frame

    def patch_start_frames(self, num_frames: int) -> List[int]:
        """Start frames of every patch that fits entirely"""
        return list(range(self.first_frame, num_frames - self.patch_size + 1, self.patch_size))

    def create_reference_patches(self, spectrogram: Spectrogram,
                                 audio: np.ndarray = None) -> List[Patch]:
        starts = self.patch_start_frames(spectrogram.num_frames)
        patches = [
            Patch(
                index=i,
                start_frame=start,
                data=spectrogram.data[:, start:start + self.patch_size],
                floor_mask=spectrogram.floor_mask[:, start:start + self.patch_size],
            )
            for i, start in enumerate(starts)
        ]
        logger.debug(f"Created {len(patches)} reference patches of {self.patch_size} frames")
        return patches


class VadPatchCreator(ImagePatchCreator):
    """
    Reference patches filtered by voice activity.

    A frame is active when its RMS is within top_db of the loudest frame;
    a patch is kept when at least min_active_fraction of its frames are active.
    """

    def __init__(self, patch_size: int, first_frame: int = 0,
                 top_db: float = 30.0, min_active_fraction: float = 0.3):
        super().__init__(patch_size, first_frame)
        self.top_db = top_db
        self.min_active_fraction = min_active_fraction

    def frame_activity(self, audio: np.ndarray, window: int, hop: int) -> np.ndarray:
        """Boolean activity per analysis frame (same framing as the spectrogram)"""
        rms = librosa.feature.rms(
            y=np.ascontiguousarray(audio),
            frame_length=window,
            hop_length=hop,
            center=False,
        )[0]
        rms_db = librosa.amplitude_to_db(rms, ref=np.max)
        return rms_db > -self.top_db

    def create_reference_patches(self, spectrogram: Spectrogram,
                                 audio: np.ndarray = None) -> List[Patch]:
        patches = super().create_reference_patches(spectrogram)
        if audio is None or not patches:
            return patches

        active = self.frame_activity(audio, spectrogram.window_samples, spectrogram.hop_samples)
        kept = []
        for patch in patches:
            frames = active[patch.start_frame:patch.start_frame + self.patch_size]
            if frames.size and frames.mean() >= self.min_active_fraction:
                kept.append(patch)

        if not kept:
            logger.warning("VAD found no active reference patches, keeping all patches")
            return patches

        logger.debug(f"VAD kept {len(kept)}/{len(patches)} reference patches")
        return [
            Patch(index=i, start_frame=p.start_frame, data=p.data, floor_mask=p.floor_mask)
            for i, p in enumerate(kept)
        ]


def create_patch_creator(analysis: AnalysisConfig) -> ImagePatchCreator:
    """Patch creator matching an analysis configuration"""
    if analysis.USE_VAD:
        return VadPatchCreator(
            analysis.PATCH_SIZE_FRAMES,
            analysis.first_patch_frame(),
            top_db=analysis.VAD_TOP_DB,
            min_active_fraction=analysis.VAD_MIN_ACTIVE_FRACTION,
        )
    return ImagePatchCreator(analysis.PATCH_SIZE_FRAMES, analysis.first_patch_frame())


def sliding_patches(values: np.ndarray, patch_size: int) -> np.ndarray:
    """
    Every patch_size-wide window of a (bands, frames) array.

    Returns:
        Read-only view of shape (positions, bands, patch_size); index is
        the start frame
    """
    if values.shape[1] < patch_size:
        return np.empty((0, values.shape[0], patch_size), dtype=values.dtype)
    view = np.lib.stride_tricks.sliding_window_view(values, patch_size, axis=1)
    # (bands, positions, patch) -> (positions, bands, patch)
    return view.transpose(1, 0, 2)
