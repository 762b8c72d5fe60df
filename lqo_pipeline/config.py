"""
Pipeline Configuration Module
=============================

FROZEN analysis parameters, measurement requests and batch settings.
DO NOT MODIFY analysis constants without version bump and documentation.

A MeasurementConfig is validated exactly once (validate_config) and is
either fully usable or rejected outright.
"""

import json
import hashlib
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from .errors import (
    MissingAudioInfoError,
    UnsupportedSampleRateError,
    ModelLoadFailureError,
)
from .model import MappingModel, load_model, resolve_model_path

logger = logging.getLogger(__name__)

SUPPORTED_SAMPLE_RATE = 48000

MISSING_AUDIO_INFO_MSG = "Audio info must be supplied for config."
UNSUPPORTED_SAMPLE_RATE_MSG = (
    "Currently, 48k is the only sample rate supported by ViSQOL Audio. "
    "See README for details of overriding."
)
MODEL_LOAD_FAILURE_MSG = "Failed to load the SVR model file: {path}"


# ============================================================================
# FROZEN ANALYSIS PARAMETERS - DO NOT MODIFY
# ============================================================================

@dataclass(frozen=True)
class AnalysisConfig:
    """
    Frozen neurogram analysis configuration.

    One instance per scoring family (audio / speech). All parameters
    are locked so that scores stay reproducible across runs.
    """
    # Analysis rate (None = analyse at the input rate)
    TARGET_SAMPLE_RATE: Optional[int] = None

    # Gammatone filterbank layout (ERB spaced)
    NUM_BANDS: int = 32
    MIN_FREQ_HZ: float = 50.0
    MAX_FREQ_HZ: float = 15000.0
    MAX_FREQ_NYQUIST_RATIO: float = 0.95  # clamp for override rates

    # Framing
    WINDOW_DURATION_SEC: float = 0.08
    WINDOW_OVERLAP: float = 0.5

    # Noise floors (dB)
    ABSOLUTE_FLOOR_DB: float = -90.0
    RELATIVE_FLOOR_DB: float = 45.0      # below louder of ref/deg per frame

    # Patches
    PATCH_SIZE_FRAMES: int = 30

    # Patch alignment
    SEARCH_WINDOW_RADIUS: int = 60       # frames either side
    PATCH_SIMILARITY_FLOOR: float = 0.1  # drop patches matching worse

    # Global alignment
    GLOBAL_MAX_SHIFT_MS: float = 1000.0

    # Voice activity (speech only)
    USE_VAD: bool = False
    VAD_TOP_DB: float = 30.0
    VAD_MIN_ACTIVE_FRACTION: float = 0.3

    # Version tracking
    CONFIG_VERSION: str = "1.0.0"

    def analysis_rate(self, input_rate: int) -> int:
        return self.TARGET_SAMPLE_RATE or input_rate

    def window_samples(self, sample_rate: int) -> int:
        return int(round(sample_rate * self.WINDOW_DURATION_SEC))

    def hop_samples(self, sample_rate: int) -> int:
        return max(1, int(round(self.window_samples(sample_rate) * (1.0 - self.WINDOW_OVERLAP))))

    def first_patch_frame(self) -> int:
        return max(0, self.PATCH_SIZE_FRAMES // 2 - 1)

    def min_reference_frames(self) -> int:
        """Frames needed for the reference to yield one full patch"""
        return self.first_patch_frame() + self.PATCH_SIZE_FRAMES


AUDIO_ANALYSIS = AnalysisConfig()

SPEECH_ANALYSIS = AnalysisConfig(
    TARGET_SAMPLE_RATE=16000,
    MAX_FREQ_HZ=8000.0,
    PATCH_SIZE_FRAMES=20,
    USE_VAD=True,
)


class ScoringMode(Enum):
    """Similarity-to-quality mapping, selected once per orchestrator"""
    AUDIO = "audio"
    SPEECH_SCALED = "speech_scaled"
    SPEECH_UNSCALED = "speech_unscaled"

    @property
    def is_speech(self) -> bool:
        return self is not ScoringMode.AUDIO

    @property
    def analysis(self) -> AnalysisConfig:
        return SPEECH_ANALYSIS if self.is_speech else AUDIO_ANALYSIS


# ============================================================================
# MEASUREMENT REQUEST
# ============================================================================

@dataclass(frozen=True)
class MeasurementConfig:
    """
    A quality-measurement request.

    sample_rate of None (or 0) means the audio info was not supplied.
    An empty model_path selects the bundled default model.
    use_unscaled_speech_mapping is inert unless use_speech_scoring is set.
    """
    sample_rate: Optional[int] = None
    model_path: str = ""
    allow_unsupported_sample_rate: bool = False
    use_speech_scoring: bool = False
    use_unscaled_speech_mapping: bool = False

    @property
    def scoring_mode(self) -> ScoringMode:
        if not self.use_speech_scoring:
            return ScoringMode.AUDIO
        if self.use_unscaled_speech_mapping:
            return ScoringMode.SPEECH_UNSCALED
        return ScoringMode.SPEECH_SCALED

    def with_sample_rate(self, sample_rate: int) -> "MeasurementConfig":
        values = asdict(self)
        values["sample_rate"] = sample_rate
        return MeasurementConfig(**values)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "MeasurementConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        unknown = set(data) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown config fields: {sorted(unknown)}")
        return cls(**known)

    def save(self, path: str):
        """Save measurement config to JSON file"""
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "MeasurementConfig":
        """Load measurement config from JSON file"""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


@dataclass(frozen=True)
class ValidatedConfig:
    """Outcome of a successful validation; immutable"""
    config: MeasurementConfig
    model_path: str
    mode: ScoringMode
    analysis: AnalysisConfig

    @property
    def sample_rate(self) -> int:
        return self.config.sample_rate


def validate_config(config: MeasurementConfig) -> Tuple[ValidatedConfig, MappingModel]:
    """
    Validate a measurement request and load its mapping model.

    Checks, in order: audio info present, supported sample rate
    (unless overridden), model loadable.

    Args:
        config: MeasurementConfig to validate

    Returns:
        Tuple of (ValidatedConfig, loaded MappingModel)

    Raises:
        MissingAudioInfoError, UnsupportedSampleRateError, ModelLoadFailureError
    """
    if not config.sample_rate or config.sample_rate <= 0:
        raise MissingAudioInfoError(MISSING_AUDIO_INFO_MSG)

    if (not config.allow_unsupported_sample_rate
            and config.sample_rate != SUPPORTED_SAMPLE_RATE):
        raise UnsupportedSampleRateError(UNSUPPORTED_SAMPLE_RATE_MSG)

    if config.sample_rate != SUPPORTED_SAMPLE_RATE:
        logger.warning(f"Running with unsupported sample rate {config.sample_rate}Hz (override set)")

    model_path = resolve_model_path(config.model_path)
    try:
        model = load_model(model_path)
    except (OSError, ValueError) as e:
        logger.error(f"Model load failed for {model_path}: {e}")
        raise ModelLoadFailureError(
            MODEL_LOAD_FAILURE_MSG.format(path=config.model_path or model_path),
            path=model_path,
        ) from e

    mode = config.scoring_mode
    validated = ValidatedConfig(
        config=config,
        model_path=model_path,
        mode=mode,
        analysis=mode.analysis,
    )
    logger.debug(f"Validated config: mode={mode.value}, sr={config.sample_rate}, model={model_path}")
    return validated, model


# ============================================================================
# BATCH RUNTIME SETTINGS
# ============================================================================

@dataclass
class PipelineConfig:
    """
    Batch pipeline configuration.

    Combines the measurement request with runtime settings.
    """
    measurement: MeasurementConfig = field(default_factory=MeasurementConfig)

    # Runtime settings (can be modified)
    n_workers: int = 4                    # Parallel workers
    verbose: bool = False                 # Detailed logging
    show_progress: bool = True            # tqdm progress bar
    output_dir: str = "pipeline_output"
    job_timeout_sec: float = 300.0        # Parallel runs: max wait for the next job to finish

    def __post_init__(self):
        """Generate config hash for version tracking"""
        self._config_hash = self._compute_hash()
        self._created_at = datetime.now().isoformat()

    def _compute_hash(self) -> str:
        """Compute deterministic hash of the frozen parameters"""
        mode = self.measurement.scoring_mode
        config_dict = {
            "measurement": self.measurement.to_dict(),
            "analysis": asdict(mode.analysis),
        }
        config_str = json.dumps(config_dict, sort_keys=True)
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def config_hash(self) -> str:
        return self._config_hash

    def to_dict(self) -> Dict:
        """Export configuration as dictionary"""
        return {
            "measurement": self.measurement.to_dict(),
            "analysis": asdict(self.measurement.scoring_mode.analysis),
            "runtime": {
                "n_workers": self.n_workers,
                "verbose": self.verbose,
                "show_progress": self.show_progress,
                "output_dir": self.output_dir,
                "job_timeout_sec": self.job_timeout_sec,
            },
            "meta": {
                "config_hash": self._config_hash,
                "created_at": self._created_at,
                "version": self.measurement.scoring_mode.analysis.CONFIG_VERSION,
            }
        }

    def save(self, path: str):
        """Save configuration to JSON file"""
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "PipelineConfig":
        """Load configuration from JSON file"""
        with open(path, "r") as f:
            data = json.load(f)

        runtime = data.get("runtime", {})
        return cls(
            measurement=MeasurementConfig.from_dict(data.get("measurement", {})),
            n_workers=runtime.get("n_workers", 4),
            verbose=runtime.get("verbose", False),
            show_progress=runtime.get("show_progress", True),
            output_dir=runtime.get("output_dir", "pipeline_output"),
            job_timeout_sec=runtime.get("job_timeout_sec", 300.0),
        )


DEFAULT_CONFIG = PipelineConfig()
