"""
LQO Pipeline - Objective Audio Quality Estimation
=================================================

Full-reference perceptual quality measurement: compares a degraded signal
against its reference and predicts a Mean Opinion Score (MOS-LQO, 1-5).

Modules:
- config: Frozen analysis parameters, measurement requests, batch settings
- errors: Typed error taxonomy
- preprocessing: Loading, mono downmix, resampling, level matching
- spectrogram: Gammatone filterbank neurograms with noise floors
- patches: Reference patch cutting (with speech VAD) and degraded windows
- alignment: Global envelope alignment and bounded patch alignment
- metrics: NSIM patch and per-band similarity
- model: libsvm / pickled regression models
- mapping: Similarity-to-MOS mapping (audio model, speech fits)
- orchestrator: Measurement state machine and multiprocessing batch runner
- reporting: Summary statistics and plots
"""

from .config import MeasurementConfig, PipelineConfig, ScoringMode
from .errors import (
    QualityError,
    ConfigurationError,
    MissingAudioInfoError,
    UnsupportedSampleRateError,
    ModelLoadFailureError,
    InvalidInputSignalError,
    OrchestratorStateError,
    NotConfiguredError,
    AlreadyConfiguredError,
)
from .orchestrator import (
    QualityOrchestrator,
    MeasurementResult,
    PatchSimilarity,
    BatchOrchestrator,
    create_orchestrator,
    run_batch,
)

__version__ = "1.0.0"
