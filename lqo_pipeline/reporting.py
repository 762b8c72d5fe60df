"""
Reporting and Visualization Module
==================================

Summaries and plots over batch measurement results.

Features:
- MOS-LQO distribution (histogram + KDE)
- Per-band NSIM profile (mean +/- std across files)
- MOS-LQO vs vnsim scatter
- Text and JSON summary reports
"""

import re
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .orchestrator import compute_summary

logger = logging.getLogger(__name__)

plt.rcParams.update({
    'figure.figsize': (12, 8),
    'figure.dpi': 150,
    'savefig.dpi': 300,
    'font.size': 12,
    'axes.labelsize': 14,
    'axes.titlesize': 16,
    'legend.fontsize': 11,
    'axes.grid': True,
    'grid.alpha': 0.3
})

BAND_COLUMN = re.compile(r"^fvnsim_(\d+)$")

# MOS bands for the quality assessment table
QUALITY_BANDS = [
    ("Excellent (>=4.0)", 4.0, 5.01),
    ("Good (3.0-4.0)", 3.0, 4.0),
    ("Fair (2.0-3.0)", 2.0, 3.0),
    ("Poor (<2.0)", 1.0, 2.0),
]


class QualityReporter:
    """
    Generate quality reports and visualizations from a results DataFrame.
    """

    def __init__(self, results_df: pd.DataFrame, output_dir: str = "reports"):
        """
        Initialize reporter.

        Args:
            results_df: DataFrame produced by BatchOrchestrator
            output_dir: Output directory for reports
        """
        self.df = results_df
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.colors = sns.color_palette("husl", 8)
        sns.set_style("whitegrid")

    @property
    def successful(self) -> pd.DataFrame:
        if 'success' not in self.df.columns:
            return self.df
        return self.df[self.df['success'].astype(bool)]

    def band_columns(self) -> List[str]:
        """fvnsim_<i> columns in band order"""
        matches = [(int(m.group(1)), c) for c in self.df.columns
                   for m in [BAND_COLUMN.match(str(c))] if m]
        return [c for _, c in sorted(matches)]

    def compute_summary(self) -> Dict:
        summary = compute_summary(self.df)

        bands = self.band_columns()
        if bands:
            values = self.successful[bands].apply(pd.to_numeric, errors='coerce')
            means = values.mean()
            summary['band_nsim_mean'] = [float(v) for v in means]
            if means.notna().any():
                summary['worst_band'] = int(BAND_COLUMN.match(means.idxmin()).group(1))

        return summary

    # =========================================================================
    # PLOTS
    # =========================================================================

    def plot_moslqo_distribution(self, save: bool = True) -> Optional[plt.Figure]:
        """
        Histogram of MOS-LQO with mean and median markers.
        """
        if 'moslqo' not in self.df.columns:
            logger.warning("moslqo column not found, skipping distribution plot")
            return None

        data = pd.to_numeric(self.df['moslqo'], errors='coerce').dropna()
        if data.empty:
            logger.warning("No MOS-LQO values to plot")
            return None

        fig, ax = plt.subplots(figsize=(10, 6))
        sns.histplot(data, kde=len(data) > 1, ax=ax, color=self.colors[0], binrange=(1.0, 5.0))

        mean_val = data.mean()
        median_val = data.median()
        ax.axvline(mean_val, color='red', linestyle='--', label=f'Mean: {mean_val:.2f}')
        ax.axvline(median_val, color='orange', linestyle='--', label=f'Median: {median_val:.2f}')

        ax.set_xlim(1.0, 5.0)
        ax.set_xlabel('MOS-LQO')
        ax.set_ylabel('Count')
        ax.set_title('Distribution of MOS-LQO')
        ax.legend()
        plt.tight_layout()

        if save:
            save_path = self.output_dir / "moslqo_distribution.png"
            fig.savefig(save_path, bbox_inches='tight')
            logger.info(f"Saved: {save_path}")

        return fig

    def plot_band_similarity_profile(self, save: bool = True) -> Optional[plt.Figure]:
        """
        Mean per-band NSIM across successful files, with a +/- 1 std band.
        """
        bands = self.band_columns()
        if not bands:
            logger.warning("No fvnsim_<i> columns found, skipping band profile")
            return None

        values = self.successful[bands].apply(pd.to_numeric, errors='coerce')
        if values.dropna(how='all').empty:
            logger.warning("No per-band similarity values to plot")
            return None

        mean = values.mean().to_numpy()
        std = values.std().fillna(0.0).to_numpy()
        index = np.arange(len(bands))

        fig, ax = plt.subplots(figsize=(12, 6))
        ax.plot(index, mean, marker='o', color=self.colors[5], label='Mean NSIM')
        ax.fill_between(index, mean - std, np.minimum(mean + std, 1.0),
                        color=self.colors[5], alpha=0.2, label='+/- 1 std')

        ax.set_ylim(min(0.0, float(np.nanmin(mean - std))), 1.05)
        ax.set_xlabel('Band (low to high frequency)')
        ax.set_ylabel('NSIM')
        ax.set_title('Per-band Similarity Profile')
        ax.legend()
        plt.tight_layout()

        if save:
            save_path = self.output_dir / "band_similarity_profile.png"
            fig.savefig(save_path, bbox_inches='tight')
            logger.info(f"Saved: {save_path}")

        return fig

    def plot_moslqo_vs_vnsim(self, save: bool = True) -> Optional[plt.Figure]:
        if not {'moslqo', 'vnsim'} <= set(self.df.columns):
            return None

        data = self.successful[['moslqo', 'vnsim']].apply(pd.to_numeric, errors='coerce').dropna()
        if data.empty:
            return None

        fig, ax = plt.subplots(figsize=(8, 6))
        sns.scatterplot(data=data, x='vnsim', y='moslqo', ax=ax, color=self.colors[3])
        ax.set_xlabel('vnsim')
        ax.set_ylabel('MOS-LQO')
        ax.set_title('MOS-LQO vs Mean Similarity')
        plt.tight_layout()

        if save:
            save_path = self.output_dir / "moslqo_vs_vnsim.png"
            fig.savefig(save_path, bbox_inches='tight')
            logger.info(f"Saved: {save_path}")

        return fig

    def generate_all_plots(self) -> List[str]:
        """
        Generate all standard plots.

        Returns:
            Names of the plots written
        """
        logger.info("Generating all plots...")

        written = []
        for name, plot in (
            ("moslqo_distribution", self.plot_moslqo_distribution),
            ("band_similarity_profile", self.plot_band_similarity_profile),
            ("moslqo_vs_vnsim", self.plot_moslqo_vs_vnsim),
        ):
            fig = plot()
            if fig is not None:
                written.append(name)
                plt.close(fig)

        logger.info(f"All plots saved to {self.output_dir}")
        return written

    # =========================================================================
    # TEXT / JSON REPORTS
    # =========================================================================

    def generate_summary_report(self) -> str:
        """
        Generate text summary report.
        """
        summary = self.compute_summary()

        report = []
        report.append("=" * 70)
        report.append("OBJECTIVE AUDIO QUALITY REPORT (MOS-LQO)")
        report.append("=" * 70)
        report.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        report.append("")

        report.append("BATCH OVERVIEW")
        report.append("-" * 40)
        report.append(f"Total pairs processed: {summary['total_files']}")
        report.append(f"Successful: {summary['successful']}")
        report.append(f"Failed: {summary['failed']}")
        for kind, count in summary.get('errors_by_kind', {}).items():
            report.append(f"  {kind}: {count}")
        report.append("")

        if 'moslqo_mean' in summary:
            report.append("MOS-LQO")
            report.append("-" * 40)
            report.append(f"Mean:   {summary['moslqo_mean']:.3f}")
            report.append(f"Std:    {summary['moslqo_std']:.3f}")
            report.append(f"Min:    {summary['moslqo_min']:.3f}")
            report.append(f"Max:    {summary['moslqo_max']:.3f}")
            report.append(f"Median: {summary['moslqo_median']:.3f}")
            report.append("")

            report.append("QUALITY ASSESSMENT")
            report.append("-" * 40)
            mos = pd.to_numeric(self.df['moslqo'], errors='coerce').dropna()
            total = len(mos)
            for label, low, high in QUALITY_BANDS:
                count = int(((mos >= low) & (mos < high)).sum())
                report.append(f"{label:<18} {count} ({100 * count / total:.1f}%)")
            report.append("")

        if 'worst_band' in summary:
            report.append(f"Lowest-similarity band: {summary['worst_band']}")
            report.append("")

        report.append("=" * 70)
        report_text = "\n".join(report)

        report_path = self.output_dir / "summary_report.txt"
        with open(report_path, 'w', encoding='utf-8') as f:
            f.write(report_text)

        logger.info(f"Summary report saved to {report_path}")
        return report_text

    def generate_json_report(self) -> str:
        report = {
            "generated_at": datetime.now().isoformat(),
            "summary": self.compute_summary(),
        }
        json_path = self.output_dir / "quality_report.json"
        with open(json_path, 'w') as f:
            json.dump(report, f, indent=2, default=str)

        logger.info(f"JSON report saved to {json_path}")
        return str(json_path)

    def generate_full_report(self):
        """
        Generate complete report package.
        """
        logger.info("Generating full report package...")

        self.generate_all_plots()
        self.generate_summary_report()
        self.generate_json_report()

        self.successful.to_csv(self.output_dir / "successful_results.csv", index=False)
        logger.info(f"Full report package saved to {self.output_dir}")


def generate_report(results_csv: str, output_dir: str = "reports"):
    """
    Convenience function to generate report from CSV.

    Args:
        results_csv: Path to results CSV file
        output_dir: Output directory for reports
    """
    df = pd.read_csv(results_csv)
    reporter = QualityReporter(df, output_dir)
    reporter.generate_full_report()
