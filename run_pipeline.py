"""
LQO Pipeline Runner
===================

Command-line front end for objective quality measurement.

Usage:
    python run_pipeline.py --reference_file ref.wav --degraded_file deg.wav
    python run_pipeline.py --batch_input_csv pairs.csv --workers 8
    python run_pipeline.py --reference_file ref.wav --degraded_file deg.wav --use_speech_mode
    python run_pipeline.py --batch_input_csv pairs.csv --report

Version: 1.0.0
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from datetime import datetime

import pandas as pd
import soundfile as sf

from lqo_pipeline.config import MeasurementConfig, PipelineConfig
from lqo_pipeline.errors import QualityError
from lqo_pipeline.orchestrator import (
    BatchOrchestrator, ProcessingJob, ProcessingResult, create_orchestrator,
)
from lqo_pipeline.reporting import QualityReporter


def setup_logging(output_dir: str, verbose: bool = False):
    """Configure logging for the pipeline."""
    log_dir = Path(output_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"pipeline_{timestamp}.log"

    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    # Reduce noise from third-party libraries
    logging.getLogger('matplotlib').setLevel(logging.WARNING)
    logging.getLogger('PIL').setLevel(logging.WARNING)
    logging.getLogger('numba').setLevel(logging.WARNING)

    return str(log_file)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Objective audio quality (MOS-LQO) measurement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Score a single pair (48 kHz audio mode)
  python run_pipeline.py --reference_file ref.wav --degraded_file deg.wav

  # Speech mode, unscaled mapping
  python run_pipeline.py --reference_file ref.wav --degraded_file deg.wav \\
      --use_speech_mode --use_unscaled_speech_mos_mapping

  # Batch of pairs listed in a CSV with 'reference' and 'degraded' columns
  python run_pipeline.py --batch_input_csv pairs.csv --workers 8 --report

  # 44.1 kHz material (outside the supported rate)
  python run_pipeline.py --reference_file ref.wav --degraded_file deg.wav \\
      --allow_unsupported_sample_rates
        """
    )

    inputs = parser.add_argument_group('inputs')
    inputs.add_argument('--reference_file', type=str, help='Reference WAV file')
    inputs.add_argument('--degraded_file', type=str, help='Degraded WAV file')
    inputs.add_argument('--batch_input_csv', type=str,
                        help="CSV with 'reference' and 'degraded' columns")

    outputs = parser.add_argument_group('outputs')
    outputs.add_argument('--results_csv', type=str,
                         help='Also write the results table to this CSV path')
    outputs.add_argument('--output_dir', '-o', type=str, default='pipeline_output',
                         help='Output directory for results and logs (default: pipeline_output)')
    outputs.add_argument('--report', action='store_true',
                         help='Generate plots and summary report after processing')

    scoring = parser.add_argument_group('scoring')
    scoring.add_argument('--similarity_to_quality_model', type=str, default='',
                         help='libsvm or pickled regression model (default: bundled model)')
    scoring.add_argument('--use_speech_mode', action='store_true',
                         help='Use speech scoring (16 kHz analysis, VAD, exponential mapping)')
    scoring.add_argument('--use_unscaled_speech_mos_mapping', action='store_true',
                         help='In speech mode, do not rescale so perfect similarity maps to 5.0')
    scoring.add_argument('--allow_unsupported_sample_rates', action='store_true',
                         help='Allow sample rates other than 48 kHz')

    runtime = parser.add_argument_group('runtime')
    runtime.add_argument('--config', type=str,
                         help='PipelineConfig JSON file; command-line flags override it')
    runtime.add_argument('--workers', '-w', type=int, default=None,
                         help='Number of parallel workers for batch mode (default: 4)')
    runtime.add_argument('--verbose', '-v', action='store_true',
                         help='Enable verbose logging')

    return parser


def build_config(args) -> PipelineConfig:
    """Merge the optional config file with command-line flags"""
    config = PipelineConfig.load(args.config) if args.config else PipelineConfig()
    measurement = config.measurement

    config = PipelineConfig(
        measurement=MeasurementConfig(
            sample_rate=measurement.sample_rate,
            model_path=args.similarity_to_quality_model or measurement.model_path,
            allow_unsupported_sample_rate=(args.allow_unsupported_sample_rates
                                           or measurement.allow_unsupported_sample_rate),
            use_speech_scoring=args.use_speech_mode or measurement.use_speech_scoring,
            use_unscaled_speech_mapping=(args.use_unscaled_speech_mos_mapping
                                         or measurement.use_unscaled_speech_mapping),
        ),
        n_workers=args.workers or config.n_workers,
        verbose=args.verbose or config.verbose,
        show_progress=config.show_progress,
        output_dir=args.output_dir,
        job_timeout_sec=config.job_timeout_sec,
    )
    return config


def run_single(config: PipelineConfig, reference_file: str, degraded_file: str) -> pd.DataFrame:
    """
    Score one pair. Configuration errors propagate; the result row is
    returned for CSV export.
    """
    logger = logging.getLogger(__name__)

    measurement = config.measurement
    if not measurement.sample_rate:
        measurement = measurement.with_sample_rate(sf.info(reference_file).samplerate)

    orchestrator = create_orchestrator(measurement)
    result = orchestrator.measure_files(reference_file, degraded_file)

    print("\n" + "=" * 70)
    print("MEASUREMENT")
    print("=" * 70)
    print(f"Reference: {reference_file}")
    print(f"Degraded:  {degraded_file}")
    print(f"Mode:      {measurement.scoring_mode.value}")
    print(f"MOS-LQO:   {result.moslqo:.4f}")
    print(f"vnsim:     {result.vnsim:.4f}")
    if result.excluded_bands:
        print(f"Excluded bands: {list(result.excluded_bands)}")
    print("=" * 70)

    details_path = Path(config.output_dir) / "measurement.json"
    with open(details_path, 'w') as f:
        json.dump(result.to_dict(), f, indent=2)
    logger.info(f"Detailed result saved to {details_path}")

    row = ProcessingResult(
        job=ProcessingJob(reference_file, degraded_file),
        measurement=result,
        success=True,
    ).to_csv_row()
    return pd.DataFrame([row])


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    single = args.reference_file or args.degraded_file
    if single and args.batch_input_csv:
        parser.error("use either --reference_file/--degraded_file or --batch_input_csv")
    if single and not (args.reference_file and args.degraded_file):
        parser.error("--reference_file and --degraded_file must be given together")
    if not single and not args.batch_input_csv:
        parser.error("no input: give --reference_file/--degraded_file or --batch_input_csv")

    log_file = setup_logging(args.output_dir, args.verbose)
    logger = logging.getLogger(__name__)

    logger.info("=" * 70)
    logger.info("LQO Quality Pipeline")
    logger.info("=" * 70)
    logger.info(f"Output: {args.output_dir}")
    logger.info(f"Log file: {log_file}")

    try:
        config = build_config(args)
    except (OSError, ValueError) as e:
        logger.error(f"Could not load config {args.config}: {e}")
        return 1

    try:
        if single:
            df = run_single(config, args.reference_file, args.degraded_file)
        else:
            df = BatchOrchestrator(config).run(args.batch_input_csv, args.output_dir)
    except QualityError as e:
        logger.error(f"[{e.kind}] {e.message}")
        return 1
    except (OSError, RuntimeError, ValueError) as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1

    if df.empty:
        logger.warning("No results generated!")
        return 1

    if args.results_csv:
        Path(args.results_csv).parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(args.results_csv, index=False)
        logger.info(f"Results written to {args.results_csv}")

    if args.report:
        report_dir = Path(args.output_dir) / "reports"
        QualityReporter(df, str(report_dir)).generate_full_report()
        logger.info(f"Reports saved to: {report_dir}")

    if not single:
        successful = int(df['success'].sum())
        print("\n" + "=" * 70)
        print("BATCH SUMMARY")
        print("=" * 70)
        print(f"Total pairs: {len(df)}")
        print(f"Successful: {successful}")
        print(f"Failed: {len(df) - successful}")
        mos = pd.to_numeric(df['moslqo'], errors='coerce').dropna()
        if len(mos) > 0:
            print(f"\nMOS-LQO: {mos.mean():.3f} ± {mos.std():.3f}")
        print(f"\nResults: {args.output_dir}/latest_results.csv")
        print("=" * 70)

        return 0 if successful == len(df) else 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
