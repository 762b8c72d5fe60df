"""
Pipeline Orchestrator
=====================

Public entry point for quality measurement, plus batch processing.

QualityOrchestrator:
- create(config): validate configuration and load the mapping model
- measure(reference, degraded): full pipeline for one pair of signals
- measure_files(reference_path, degraded_path): same, from WAV files

BatchOrchestrator:
- CSV of reference/degraded pairs processed by a worker pool
- Progress tracking, per-job error capture
- Structured CSV / JSON output generation
"""

import json
import time
import logging
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass
from datetime import datetime
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from tqdm import tqdm
import pandas as pd
import numpy as np
import soundfile as sf

from .config import (
    MeasurementConfig, PipelineConfig, ValidatedConfig, ScoringMode,
    DEFAULT_CONFIG, validate_config,
)
from .errors import (
    QualityError, InvalidInputSignalError,
    NotConfiguredError, AlreadyConfiguredError,
)
from .model import MappingModel
from .preprocessing import (
    AudioLoader, validate_signal, resample, match_sound_pressure_level,
)
from .spectrogram import GammatoneSpectrogramBuilder, prepare_for_comparison, num_frames
from .patches import create_patch_creator, sliding_patches
from .alignment import GlobalAligner, PatchAligner, PatchAlignment
from .metrics import NsimScorer, SimilarityVector, intensity_range
from .mapping import QualityMapper

logger = logging.getLogger(__name__)


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True)
class PatchSimilarity:
    """Similarity of one aligned patch pair, with its position in seconds"""
    similarity: float
    ref_patch_start_time: float
    ref_patch_end_time: float
    deg_patch_start_time: float
    deg_patch_end_time: float

    def to_dict(self) -> Dict:
        return {
            "similarity": self.similarity,
            "ref_patch_start_time": self.ref_patch_start_time,
            "ref_patch_end_time": self.ref_patch_end_time,
            "deg_patch_start_time": self.deg_patch_start_time,
            "deg_patch_end_time": self.deg_patch_end_time,
        }


@dataclass(frozen=True)
class MeasurementResult:
    """Outcome of one measurement; owns copies of all its data"""
    moslqo: float
    vnsim: float
    fvnsim: Tuple[float, ...]
    fstdnsim: Tuple[float, ...] = ()
    fvdegenergy: Tuple[float, ...] = ()
    center_freq_bands: Tuple[float, ...] = ()
    patch_sims: Tuple[PatchSimilarity, ...] = ()
    excluded_bands: Tuple[int, ...] = ()
    global_shift_samples: int = 0
    reference_path: str = ""
    degraded_path: str = ""

    def to_dict(self) -> Dict:
        return {
            "moslqo": self.moslqo,
            "vnsim": self.vnsim,
            "fvnsim": list(self.fvnsim),
            "fstdnsim": list(self.fstdnsim),
            "fvdegenergy": list(self.fvdegenergy),
            "center_freq_bands": list(self.center_freq_bands),
            "patch_sims": [p.to_dict() for p in self.patch_sims],
            "excluded_bands": list(self.excluded_bands),
            "global_shift_samples": self.global_shift_samples,
            "reference_path": self.reference_path,
            "degraded_path": self.degraded_path,
        }


def _floats(values) -> Tuple[float, ...]:
    return tuple(float(v) for v in values)


# ============================================================================
# MEASUREMENT ORCHESTRATOR
# ============================================================================

class OrchestratorState(Enum):
    UNINITIALIZED = "uninitialized"
    CONFIGURED = "configured"


class QualityOrchestrator:
    """
    Measurement orchestrator.

    Usage:
        orchestrator = QualityOrchestrator()
        orchestrator.create(MeasurementConfig(sample_rate=48000))
        result = orchestrator.measure(reference, degraded)

    Once configured the instance only holds immutable state (validated
    config, read-only model, filter coefficients), so concurrent measure()
    calls are safe.
    """

    def __init__(self):
        self._state = OrchestratorState.UNINITIALIZED
        self._validated: Optional[ValidatedConfig] = None
        self._model: Optional[MappingModel] = None
        self._mapper: Optional[QualityMapper] = None
        self._builder: Optional[GammatoneSpectrogramBuilder] = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_configured(self) -> bool:
        return self._state is OrchestratorState.CONFIGURED

    @property
    def config(self) -> MeasurementConfig:
        self._require_configured()
        return self._validated.config

    @property
    def mode(self) -> ScoringMode:
        self._require_configured()
        return self._validated.mode

    def create(self, config: MeasurementConfig):
        """
        Validate configuration and load the mapping model.

        On failure the orchestrator stays uninitialized.

        Raises:
            MissingAudioInfoError, UnsupportedSampleRateError,
            ModelLoadFailureError, AlreadyConfiguredError
        """
        if self.is_configured:
            raise AlreadyConfiguredError(
                "Orchestrator is already configured; construct a new one to change configuration."
            )

        validated, model = validate_config(config)
        analysis = validated.analysis
        rate = analysis.analysis_rate(validated.sample_rate)

        # Nothing is kept unless every component builds
        mapper = QualityMapper(validated.mode, model)
        builder = GammatoneSpectrogramBuilder(analysis, rate)
        patch_creator = create_patch_creator(analysis)
        global_aligner = GlobalAligner(analysis.GLOBAL_MAX_SHIFT_MS)
        patch_aligner = PatchAligner(analysis)

        self._validated = validated
        self._model = model
        self._mapper = mapper
        self._builder = builder
        self._patch_creator = patch_creator
        self._global_aligner = global_aligner
        self._patch_aligner = patch_aligner
        self._state = OrchestratorState.CONFIGURED

        logger.info(f"QualityOrchestrator configured (mode={validated.mode.value}, "
                    f"sr={validated.sample_rate}Hz, analysis sr={rate}Hz)")

    def _require_configured(self):
        if not self.is_configured:
            raise NotConfiguredError("measure() called before a successful create().")

    def _check_length(self, audio: np.ndarray, name: str, min_frames: int):
        frames = num_frames(audio.size, self._builder.window, self._builder.hop)
        if frames < min_frames:
            duration = audio.size / self._builder.sample_rate
            raise InvalidInputSignalError(
                f"The {name} signal is too short ({duration:.3f}s, {frames} analysis frames); "
                f"at least {min_frames} frames are required to form a patch."
            )

    def measure(self, reference, degraded) -> MeasurementResult:
        """
        Measure the quality of degraded relative to reference.

        Args:
            reference: Mono reference samples at the configured sample rate
            degraded: Mono degraded samples at the configured sample rate

        Returns:
            MeasurementResult

        Raises:
            NotConfiguredError: create() has not succeeded
            InvalidInputSignalError: empty, non-finite or too-short input
        """
        self._require_configured()
        return self._measure(reference, degraded)

    def _measure(self, reference, degraded,
                 reference_path: str = "", degraded_path: str = "") -> MeasurementResult:
        analysis = self._validated.analysis
        input_rate = self._validated.sample_rate
        rate = self._builder.sample_rate
        patch_size = analysis.PATCH_SIZE_FRAMES

        ref = validate_signal(reference, "reference")
        deg = validate_signal(degraded, "degraded")
        ref = resample(ref, input_rate, rate)
        deg = resample(deg, input_rate, rate)

        self._check_length(ref, "reference", analysis.min_reference_frames())
        self._check_length(deg, "degraded", patch_size)

        # 1. Global alignment and level matching
        global_alignment = self._global_aligner.align(ref, deg, rate)
        deg = global_alignment.degraded
        self._check_length(deg, "degraded (after global alignment)", patch_size)
        deg = match_sound_pressure_level(ref, deg)

        # 2. Neurograms
        ref_spec, deg_spec = prepare_for_comparison(
            self._builder.build(ref),
            self._builder.build(deg),
            analysis.RELATIVE_FLOOR_DB,
        )

        # 3. Patches and alignment
        ref_patches = self._patch_creator.create_reference_patches(ref_spec, ref)
        deg_patches = sliding_patches(deg_spec.data, patch_size)
        deg_masks = sliding_patches(deg_spec.floor_mask, patch_size)

        scorer = NsimScorer(intensity_range(ref_spec))
        alignment = self._patch_aligner.align(ref_patches, deg_patches, scorer.patch_similarity)
        if not alignment.matches:
            raise InvalidInputSignalError(
                f"None of the {len(ref_patches)} reference patches matched the degraded signal "
                f"above the similarity floor ({analysis.PATCH_SIMILARITY_FLOOR})."
            )

        # 4. Similarity and quality
        pairs = [
            (ref_patches[m.ref_index].data, deg_patches[m.deg_frame],
             ref_patches[m.ref_index].floor_mask, deg_masks[m.deg_frame])
            for m in alignment.matches
        ]
        similarity = scorer.score(pairs)
        moslqo = self._mapper.predict(similarity)

        logger.debug(f"Measured moslqo={moslqo:.4f}, vnsim={similarity.vnsim:.4f} "
                     f"({len(alignment.matches)}/{len(ref_patches)} patches)")

        return self._assemble_result(
            moslqo, similarity, alignment, ref_spec, global_alignment.shift_samples,
            reference_path, degraded_path,
        )

    def _assemble_result(self, moslqo: float, similarity: SimilarityVector,
                         alignment: PatchAlignment, ref_spec, shift_samples: int,
                         reference_path: str, degraded_path: str) -> MeasurementResult:
        patch_size = self._validated.analysis.PATCH_SIZE_FRAMES
        last = patch_size - 1
        patch_sims = tuple(
            PatchSimilarity(
                similarity=float(sim),
                ref_patch_start_time=ref_spec.frame_start_time(m.ref_frame),
                ref_patch_end_time=ref_spec.frame_end_time(m.ref_frame + last),
                deg_patch_start_time=ref_spec.frame_start_time(m.deg_frame),
                deg_patch_end_time=ref_spec.frame_end_time(m.deg_frame + last),
            )
            for m, sim in zip(alignment.matches, similarity.patch_similarities)
        )

        return MeasurementResult(
            moslqo=moslqo,
            vnsim=float(similarity.vnsim),
            fvnsim=_floats(similarity.fvnsim),
            fstdnsim=_floats(similarity.fstdnsim),
            fvdegenergy=_floats(similarity.fvdegenergy),
            center_freq_bands=_floats(ref_spec.center_freqs),
            patch_sims=patch_sims,
            excluded_bands=tuple(similarity.excluded_bands),
            global_shift_samples=int(shift_samples),
            reference_path=reference_path,
            degraded_path=degraded_path,
        )

    def measure_files(self, reference_path: str, degraded_path: str) -> MeasurementResult:
        """
        Load a WAV pair and measure it.

        Files are downmixed to mono and resampled to the configured rate
        when their native rate differs.
        """
        self._require_configured()
        pair = AudioLoader().load_pair(reference_path, degraded_path)
        reference, degraded = pair.reference, pair.degraded

        configured = self._validated.sample_rate
        if pair.sample_rate != configured:
            logger.warning(f"File rate {pair.sample_rate}Hz differs from configured "
                           f"{configured}Hz, resampling")
            reference = resample(reference, pair.sample_rate, configured)
            degraded = resample(degraded, pair.sample_rate, configured)

        return self._measure(reference, degraded,
                             reference_path=str(reference_path),
                             degraded_path=str(degraded_path))


def create_orchestrator(config: MeasurementConfig) -> QualityOrchestrator:
    """Construct and configure an orchestrator in one step"""
    orchestrator = QualityOrchestrator()
    orchestrator.create(config)
    return orchestrator


# ============================================================================
# BATCH PROCESSING
# ============================================================================

@dataclass
class ProcessingJob:
    """Single file-pair processing job"""
    reference_path: str
    degraded_path: str

    def to_dict(self) -> Dict:
        return {
            "reference_path": self.reference_path,
            "degraded_path": self.degraded_path,
        }


@dataclass
class ProcessingResult:
    """Result of processing a single pair"""
    job: ProcessingJob
    measurement: Optional[MeasurementResult] = None
    success: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    processing_time_sec: float = 0.0

    def to_csv_row(self) -> Dict:
        """Flatten result for CSV export"""
        row = {
            "reference": self.job.reference_path,
            "degraded": self.job.degraded_path,
            "moslqo": None,
            "vnsim": None,
        }

        if self.measurement:
            row["moslqo"] = self.measurement.moslqo
            row["vnsim"] = self.measurement.vnsim
            for i, value in enumerate(self.measurement.fvnsim):
                row[f"fvnsim_{i}"] = value

        row.update({
            "success": self.success,
            "error": self.error,
            "error_kind": self.error_kind,
            "processing_time_sec": self.processing_time_sec,
        })
        return row


@lru_cache(maxsize=8)
def _cached_orchestrator(config: MeasurementConfig) -> QualityOrchestrator:
    """One configured orchestrator per config per worker process"""
    return create_orchestrator(config)


def process_single_job(job: ProcessingJob,
                       config: MeasurementConfig) -> ProcessingResult:
    """
    Process a single audio pair (worker function).

    This function is designed to be called in a separate process. When the
    config carries no sample rate, the reference file's rate is used.

    Args:
        job: ProcessingJob with file paths
        config: MeasurementConfig instance

    Returns:
        ProcessingResult
    """
    start_time = time.time()
    result = ProcessingResult(job=job)

    try:
        if not config.sample_rate:
            config = config.with_sample_rate(sf.info(job.reference_path).samplerate)
        orchestrator = _cached_orchestrator(config)
        result.measurement = orchestrator.measure_files(job.reference_path, job.degraded_path)
        result.success = True
    except QualityError as e:
        result.error = e.message
        result.error_kind = e.kind
        logger.error(f"Measurement failed for {job.degraded_path}: [{e.kind}] {e.message}")
    except (OSError, RuntimeError, ValueError) as e:
        result.error = str(e)
        result.error_kind = type(e).__name__
        logger.error(f"Processing failed for {job.degraded_path}: {e}")

    result.processing_time_sec = time.time() - start_time
    return result


class BatchOrchestrator:
    """
    Batch pipeline orchestrator with multiprocessing support.

    Usage:
        orchestrator = BatchOrchestrator(config)
        results = orchestrator.run("pairs.csv", output_dir="results/")
    """

    REFERENCE_COLUMN = "reference"
    DEGRADED_COLUMN = "degraded"

    # Runs in worker processes; must stay picklable
    job_function = staticmethod(process_single_job)

    def __init__(self, config: PipelineConfig = None):
        """
        Initialize orchestrator.

        Args:
            config: PipelineConfig instance
        """
        self.config = config or DEFAULT_CONFIG

        # Results storage
        self.results: List[ProcessingResult] = []
        self._run_metadata: Dict = {}

    def load_jobs(self, batch_csv: str) -> List[ProcessingJob]:
        """
        Read reference/degraded pairs from a CSV file.

        Relative paths are resolved against the CSV's directory.
        """
        df = pd.read_csv(batch_csv)
        missing = {self.REFERENCE_COLUMN, self.DEGRADED_COLUMN} - set(df.columns)
        if missing:
            raise ValueError(f"Batch CSV {batch_csv} is missing columns: {sorted(missing)}")

        base = Path(batch_csv).parent
        jobs = []
        for ref, deg in zip(df[self.REFERENCE_COLUMN], df[self.DEGRADED_COLUMN]):
            ref_path = Path(str(ref).strip())
            deg_path = Path(str(deg).strip())
            if not ref_path.is_absolute():
                ref_path = base / ref_path
            if not deg_path.is_absolute():
                deg_path = base / deg_path
            jobs.append(ProcessingJob(reference_path=str(ref_path), degraded_path=str(deg_path)))

        logger.info(f"Loaded {len(jobs)} jobs from {batch_csv}")
        return jobs

    def run(self, batch_csv: str,
            output_dir: str = None,
            n_workers: int = None,
            show_progress: bool = None) -> pd.DataFrame:
        """
        Run the pipeline on every pair listed in batch_csv.

        Args:
            batch_csv: CSV with 'reference' and 'degraded' columns
            output_dir: Output directory for results
            n_workers: Number of parallel workers (None = use config)
            show_progress: Show progress bar (None = use config)

        Returns:
            DataFrame with all results
        """
        start_time = time.time()

        n_workers = n_workers or self.config.n_workers
        output_dir = output_dir or self.config.output_dir
        if show_progress is None:
            show_progress = self.config.show_progress

        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        self._run_metadata = {
            "batch_csv": batch_csv,
            "output_dir": output_dir,
            "config_hash": self.config.config_hash,
            "scoring_mode": self.config.measurement.scoring_mode.value,
            "start_time": datetime.now().isoformat(),
            "n_workers": n_workers
        }

        logger.info(f"Starting batch run (mode={self.config.measurement.scoring_mode.value})")
        logger.info(f"Workers: {n_workers}")

        jobs = self.load_jobs(batch_csv)
        if not jobs:
            logger.warning("No processing jobs found!")
            return pd.DataFrame()

        self._run_metadata["total_jobs"] = len(jobs)

        if n_workers > 1:
            self.results = self._process_parallel(jobs, n_workers, show_progress)
        else:
            self.results = self._process_sequential(jobs, show_progress)

        df = self._generate_dataframe()
        self._save_results(df, output_path)

        elapsed = time.time() - start_time
        successful = sum(1 for r in self.results if r.success)

        self._run_metadata.update({
            "end_time": datetime.now().isoformat(),
            "elapsed_sec": elapsed,
            "successful": successful,
            "failed": len(self.results) - successful
        })
        self._save_run_metadata(output_path)

        logger.info(f"Batch complete: {successful}/{len(self.results)} successful in {elapsed:.1f}s")
        return df

    def _process_parallel(self, jobs: List[ProcessingJob],
                          n_workers: int,
                          show_progress: bool) -> List[ProcessingResult]:
        """
        Process jobs in parallel using ProcessPoolExecutor.

        When no job finishes within job_timeout_sec, every unfinished job
        is recorded as a Timeout failure and the pool is abandoned.
        """
        results: List[Optional[ProcessingResult]] = [None] * len(jobs)
        measurement = self.config.measurement
        timeout = self.config.job_timeout_sec or None

        executor = ProcessPoolExecutor(max_workers=n_workers)
        progress = tqdm(total=len(jobs), desc="Measuring") if show_progress else None
        timed_out = False
        try:
            future_to_index = {
                executor.submit(self.job_function, job, measurement): i
                for i, job in enumerate(jobs)
            }

            pending = set(future_to_index)
            while pending:
                done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
                if not done:
                    timed_out = True
                    break

                for future in done:
                    index = future_to_index[future]
                    job = jobs[index]
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        # Worker crashes surface here, e.g. BrokenProcessPool
                        logger.error(f"Job failed: {job.degraded_path}: {e}")
                        results[index] = ProcessingResult(
                            job=job,
                            success=False,
                            error=str(e),
                            error_kind=type(e).__name__,
                        )
                    if progress is not None:
                        progress.update(1)

            for future in pending:
                future.cancel()
                index = future_to_index[future]
                job = jobs[index]
                logger.error(f"Job timed out after {timeout}s: {job.degraded_path}")
                results[index] = ProcessingResult(
                    job=job,
                    success=False,
                    error=f"No result within {timeout}s",
                    error_kind="Timeout",
                )
        finally:
            if progress is not None:
                progress.close()
            executor.shutdown(wait=not timed_out, cancel_futures=True)

        # Input order, regardless of completion order
        return results

    def _process_sequential(self, jobs: List[ProcessingJob],
                            show_progress: bool) -> List[ProcessingResult]:
        """
        Process jobs sequentially (single worker or debugging).
        """
        iterator = tqdm(jobs, desc="Measuring") if show_progress else jobs
        return [self.job_function(job, self.config.measurement) for job in iterator]

    def _generate_dataframe(self) -> pd.DataFrame:
        """
        Convert results to pandas DataFrame.
        """
        rows = [r.to_csv_row() for r in self.results]
        return pd.DataFrame(rows)

    def _save_results(self, df: pd.DataFrame, output_path: Path):
        """
        Save results CSV, summary statistics and config snapshot.
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

        csv_path = output_path / f"quality_results_{timestamp}.csv"
        df.to_csv(csv_path, index=False)
        logger.info(f"Saved CSV: {csv_path}")
        self._run_metadata["results_csv"] = str(csv_path)

        summary = compute_summary(df)
        summary_path = output_path / f"summary_statistics_{timestamp}.json"
        with open(summary_path, 'w') as f:
            json.dump(summary, f, indent=2, default=str)
        logger.info(f"Saved summary: {summary_path}")

        config_path = output_path / f"config_snapshot_{timestamp}.json"
        self.config.save(str(config_path))

        latest_csv = output_path / "latest_results.csv"
        if latest_csv.is_symlink() or latest_csv.exists():
            latest_csv.unlink()
        try:
            latest_csv.symlink_to(csv_path.name)
        except (OSError, NotImplementedError):
            # Symlinks may not work on Windows
            df.to_csv(latest_csv, index=False)

    def _save_run_metadata(self, output_path: Path):
        meta_path = output_path / "run_metadata.json"
        with open(meta_path, 'w') as f:
            json.dump(self._run_metadata, f, indent=2, default=str)


def compute_summary(df: pd.DataFrame) -> Dict:
    """
    Compute summary statistics from batch results.
    """
    if df.empty:
        return {"total_files": 0, "successful": 0, "failed": 0}

    summary = {
        "total_files": len(df),
        "successful": int(df['success'].sum()),
        "failed": int((~df['success'].astype(bool)).sum()),
    }

    for metric in ('moslqo', 'vnsim'):
        if metric in df.columns:
            valid = pd.to_numeric(df[metric], errors='coerce').dropna()
            if len(valid) > 0:
                summary[f"{metric}_mean"] = float(valid.mean())
                summary[f"{metric}_std"] = float(valid.std()) if len(valid) > 1 else 0.0
                summary[f"{metric}_min"] = float(valid.min())
                summary[f"{metric}_max"] = float(valid.max())
                summary[f"{metric}_median"] = float(valid.median())

    if 'error_kind' in df.columns:
        kinds = df['error_kind'].dropna()
        if len(kinds) > 0:
            summary['errors_by_kind'] = {str(k): int(v) for k, v in kinds.value_counts().items()}

    return summary


def run_batch(batch_csv: str,
              measurement: MeasurementConfig = None,
              output_dir: str = "pipeline_output",
              n_workers: int = 4) -> pd.DataFrame:
    """
    Convenience function to run a batch measurement.

    Args:
        batch_csv: CSV with 'reference' and 'degraded' columns
        measurement: MeasurementConfig (sample rate taken from files if unset)
        output_dir: Output directory for results
        n_workers: Number of parallel workers

    Returns:
        DataFrame with all metrics
    """
    config = PipelineConfig(
        measurement=measurement or MeasurementConfig(),
        n_workers=n_workers,
        output_dir=output_dir,
    )
    return BatchOrchestrator(config).run(batch_csv, output_dir, n_workers)
