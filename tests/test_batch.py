"""
Batch runner tests.

- CSV of pairs in, results CSV and JSON summaries out
- Per-job failures are recorded without aborting the batch
"""

import json
import time

import pandas as pd
import pytest
import soundfile as sf

from conftest import SAMPLE_RATE, add_noise, make_music
from lqo_pipeline.config import MeasurementConfig, PipelineConfig
from lqo_pipeline.orchestrator import (
    BatchOrchestrator,
    ProcessingJob,
    compute_summary,
    process_single_job,
    run_batch,
)


@pytest.fixture
def pair_dir(tmp_path):
    """Reference, two degraded versions, a too-short file and a batch CSV."""
    music = make_music(duration_sec=3.0)
    sf.write(tmp_path / "ref.wav", music, SAMPLE_RATE)
    sf.write(tmp_path / "deg_light.wav", add_noise(music, 25.0), SAMPLE_RATE)
    sf.write(tmp_path / "deg_heavy.wav", add_noise(music, 0.0), SAMPLE_RATE)
    sf.write(tmp_path / "short.wav", music[:SAMPLE_RATE // 2], SAMPLE_RATE)

    pd.DataFrame({
        "reference": ["ref.wav", "ref.wav", "ref.wav", "ref.wav"],
        "degraded": ["deg_light.wav", "deg_heavy.wav", "missing.wav", "short.wav"],
    }).to_csv(tmp_path / "pairs.csv", index=False)
    return tmp_path


def batch_config(tmp_path, n_workers=1) -> PipelineConfig:
    return PipelineConfig(
        measurement=MeasurementConfig(),
        n_workers=n_workers,
        show_progress=False,
        output_dir=str(tmp_path / "out"),
    )


def test_load_jobs_resolves_relative_paths(pair_dir):
    jobs = BatchOrchestrator(batch_config(pair_dir)).load_jobs(str(pair_dir / "pairs.csv"))
    assert len(jobs) == 4
    assert jobs[0].reference_path == str(pair_dir / "ref.wav")
    assert jobs[2].degraded_path == str(pair_dir / "missing.wav")


def test_load_jobs_requires_columns(tmp_path):
    path = tmp_path / "bad.csv"
    pd.DataFrame({"ref": ["a.wav"], "deg": ["b.wav"]}).to_csv(path, index=False)
    with pytest.raises(ValueError):
        BatchOrchestrator(batch_config(tmp_path)).load_jobs(str(path))


def test_single_job_takes_rate_from_file(pair_dir):
    job = ProcessingJob(str(pair_dir / "ref.wav"), str(pair_dir / "deg_light.wav"))
    result = process_single_job(job, MeasurementConfig())
    assert result.success, result.error
    assert 1.0 <= result.measurement.moslqo <= 5.0
    assert result.processing_time_sec > 0


def test_single_job_records_failure(pair_dir):
    job = ProcessingJob(str(pair_dir / "ref.wav"), str(pair_dir / "short.wav"))
    result = process_single_job(job, MeasurementConfig())
    assert not result.success
    assert result.error_kind == "InvalidInputSignal"
    assert "too short" in result.error


def test_batch_run_sequential(pair_dir):
    out = pair_dir / "out"
    orchestrator = BatchOrchestrator(batch_config(pair_dir))
    df = orchestrator.run(str(pair_dir / "pairs.csv"), str(out))

    assert len(df) == 4
    assert df["success"].tolist() == [True, True, False, False]
    for column in ("reference", "degraded", "moslqo", "vnsim", "fvnsim_0", "fvnsim_31",
                   "success", "error", "processing_time_sec"):
        assert column in df.columns, f"Missing column {column}"

    light, heavy = df["moslqo"].iloc[0], df["moslqo"].iloc[1]
    assert light > heavy

    assert (out / "latest_results.csv").exists()
    assert list(out.glob("quality_results_*.csv"))
    assert list(out.glob("config_snapshot_*.json"))

    with open(out / "run_metadata.json") as f:
        metadata = json.load(f)
    assert metadata["successful"] == 2
    assert metadata["failed"] == 2

    summary_path = next(out.glob("summary_statistics_*.json"))
    with open(summary_path) as f:
        summary = json.load(f)
    assert summary["total_files"] == 4
    assert summary["errors_by_kind"]["InvalidInputSignal"] == 1


def test_batch_run_parallel_matches_sequential(pair_dir):
    sequential = BatchOrchestrator(batch_config(pair_dir)).run(
        str(pair_dir / "pairs.csv"), str(pair_dir / "seq"))
    parallel = BatchOrchestrator(batch_config(pair_dir, n_workers=2)).run(
        str(pair_dir / "pairs.csv"), str(pair_dir / "par"))

    assert parallel["degraded"].tolist() == sequential["degraded"].tolist()
    assert parallel["success"].tolist() == sequential["success"].tolist()
    assert parallel["moslqo"].iloc[:2].tolist() == sequential["moslqo"].iloc[:2].tolist()


def test_compute_summary_empty():
    assert compute_summary(pd.DataFrame()) == {"total_files": 0, "successful": 0, "failed": 0}


def test_run_batch_convenience(pair_dir):
    out = pair_dir / "conv"
    df = run_batch(str(pair_dir / "pairs.csv"), output_dir=str(out), n_workers=1)
    assert df["success"].tolist() == [True, True, False, False]
    assert (out / "latest_results.csv").exists()


def slow_job(job, measurement):
    time.sleep(5.0)
    return process_single_job(job, measurement)


class SlowBatchOrchestrator(BatchOrchestrator):
    job_function = staticmethod(slow_job)


def test_parallel_jobs_past_timeout_recorded_as_failures(pair_dir):
    config = PipelineConfig(
        measurement=MeasurementConfig(),
        n_workers=2,
        show_progress=False,
        output_dir=str(pair_dir / "slow"),
        job_timeout_sec=0.5,
    )
    start = time.monotonic()
    df = SlowBatchOrchestrator(config).run(str(pair_dir / "pairs.csv"), str(pair_dir / "slow"))
    elapsed = time.monotonic() - start

    assert len(df) == 4
    assert not df["success"].any()
    assert df["error_kind"].tolist() == ["Timeout"] * 4
    assert elapsed < 4.0, f"Batch waited {elapsed:.1f}s for jobs past their timeout"
