"""
Reporting tests on a synthetic results table.
"""

import json

import numpy as np
import pandas as pd

from lqo_pipeline.reporting import QualityReporter, generate_report


def results_frame() -> pd.DataFrame:
    rng = np.random.default_rng(0)
    rows = []
    for i in range(6):
        row = {
            "reference": "ref.wav",
            "degraded": f"deg_{i}.wav",
            "moslqo": float(rng.uniform(1.5, 4.8)),
            "vnsim": float(rng.uniform(0.5, 1.0)),
        }
        for band in range(32):
            row[f"fvnsim_{band}"] = 0.9 if band != 5 else 0.4
        row.update({"success": True, "error": None, "error_kind": None,
                    "processing_time_sec": 0.1})
        rows.append(row)
    rows.append({"reference": "ref.wav", "degraded": "bad.wav", "moslqo": None, "vnsim": None,
                 "success": False, "error": "boom", "error_kind": "InvalidInputSignal",
                 "processing_time_sec": 0.0})
    return pd.DataFrame(rows)


def test_band_columns_in_band_order(tmp_path):
    reporter = QualityReporter(results_frame(), str(tmp_path))
    columns = reporter.band_columns()
    assert len(columns) == 32
    assert columns[:3] == ["fvnsim_0", "fvnsim_1", "fvnsim_2"]
    assert columns[-1] == "fvnsim_31"


def test_summary_identifies_worst_band(tmp_path):
    summary = QualityReporter(results_frame(), str(tmp_path)).compute_summary()
    assert summary["total_files"] == 7
    assert summary["successful"] == 6
    assert summary["failed"] == 1
    assert summary["worst_band"] == 5
    assert 1.5 <= summary["moslqo_mean"] <= 4.8


def test_full_report_writes_outputs(tmp_path):
    reporter = QualityReporter(results_frame(), str(tmp_path))
    assert reporter.generate_all_plots() == [
        "moslqo_distribution", "band_similarity_profile", "moslqo_vs_vnsim"]

    reporter.generate_full_report()
    for name in ("moslqo_distribution.png", "band_similarity_profile.png",
                 "summary_report.txt", "quality_report.json", "successful_results.csv"):
        assert (tmp_path / name).exists(), f"{name} not written"

    with open(tmp_path / "quality_report.json") as f:
        report = json.load(f)
    assert report["summary"]["successful"] == 6
    assert len(pd.read_csv(tmp_path / "successful_results.csv")) == 6


def test_report_from_csv(tmp_path):
    csv_path = tmp_path / "results.csv"
    results_frame().to_csv(csv_path, index=False)
    generate_report(str(csv_path), str(tmp_path / "reports"))
    assert (tmp_path / "reports" / "summary_report.txt").exists()


def test_missing_columns_skip_plots(tmp_path):
    reporter = QualityReporter(pd.DataFrame({"success": [False]}), str(tmp_path))
    assert reporter.plot_moslqo_distribution() is None
    assert reporter.plot_band_similarity_profile() is None
