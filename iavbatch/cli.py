#!/usr/bin/env python3
"""
IAVBatch Command-Line Interface

Runs the nanopore Influenza A batch pipeline (ingest, filtlong, IRMA,
consensus pooling, nextclade) for one sequencing batch.
"""

import argparse
import sys
import logging
from pathlib import Path
from typing import List, Optional

from . import __version__, config, core, utils
from .samples import load_sample_sheet
from .stages import STAGE_NAMES

logger = logging.getLogger(__name__)


def main_init_config(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for the 'init-config' subcommand.

    Example:
        iavbatch init-config FOX01.yaml
    """
    parser = argparse.ArgumentParser(
        prog="iavbatch init-config",
        description="Write a configuration template listing every barcode",
    )
    parser.add_argument(
        "output",
        type=Path,
        help="Template path (.yaml, .yml or .json)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing file",
    )

    args = parser.parse_args(argv)

    if args.output.exists() and not args.force:
        print(f"Error: {args.output} already exists (use --force to overwrite)", file=sys.stderr)
        return 1

    fmt = "json" if args.output.suffix.lower() == ".json" else "yaml"
    config.create_config_template(args.output, format=fmt)
    print(f"Wrote configuration template: {args.output}")
    return 0


def build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iavbatch",
        description='IAVBatch: Influenza A nanopore batch pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full run from a configuration file
  iavbatch run --config FOX01.yaml

  # Batch settings on the command line, labels from a sample sheet
  iavbatch run --batch FOX01 --sample-prefix FOX01 --sample-sheet samples.tsv

  # Re-pool an existing IRMA run without re-running any tool
  iavbatch run --config FOX01.yaml --start-stage aggregate --stop-stage relabel

  # Write a configuration template
  iavbatch init-config FOX01.yaml

Notes:
  - Stages: ingest, filter, assemble, aggregate, relabel, clade
  - Required tools: samtools (BAM input only), filtlong, IRMA, nextclade
  - Environment variables prefixed IAVBATCH_ override the configuration file
        """
    )

    parser.add_argument(
        '-c', '--config',
        type=Path,
        default=None,
        help='YAML or JSON configuration file'
    )

    parser.add_argument(
        '-b', '--batch',
        type=str,
        default=None,
        help='Batch ID used in pooled file names and headers'
    )

    parser.add_argument(
        '-p', '--sample-prefix',
        type=str,
        default=None,
        help='Prefix of raw input files ({prefix}_barcodeNN.bam)'
    )

    parser.add_argument(
        '-w', '--work-dir',
        type=Path,
        default=None,
        help='Directory holding raw inputs; outputs are written beneath it'
    )

    parser.add_argument(
        '--sample-sheet',
        type=Path,
        default=None,
        help='TSV with barcode and sample columns (overrides configured labels)'
    )

    parser.add_argument(
        '--threads',
        type=int,
        default=None,
        help='Maximum concurrent tool processes (default: 8)'
    )

    parser.add_argument(
        '--reference-fasta',
        type=Path,
        default=None,
        help='Reference collection for nextclade (default: IRMA FLU_ont consensus.fasta)'
    )

    parser.add_argument(
        '--start-stage',
        choices=STAGE_NAMES,
        default=None,
        help='First stage to run (default: ingest)'
    )

    parser.add_argument(
        '--stop-stage',
        choices=STAGE_NAMES,
        default=None,
        help='Last stage to run (default: clade)'
    )

    parser.add_argument(
        '--no-clade',
        action='store_true',
        help='Skip nextclade analysis'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Logging verbosity (default: INFO)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'IAVBatch {__version__}'
    )

    return parser


def build_config(args: argparse.Namespace) -> config.PipelineConfig:
    """
    Resolve the run configuration.

    Precedence, lowest first: defaults, configuration file, IAVBATCH_*
    environment variables, command-line options.
    """
    if args.config is not None:
        cfg = config.load_config_from_file(args.config)
    else:
        cfg = config.get_default_config()

    env_overrides = config.load_config_from_env()
    if env_overrides:
        cfg = cfg.update(**env_overrides)

    overrides = {}
    if args.batch is not None:
        overrides['batch_id'] = args.batch
    if args.sample_prefix is not None:
        overrides['sample_prefix'] = args.sample_prefix
    if args.work_dir is not None:
        overrides['work_dir'] = args.work_dir
    if args.threads is not None:
        overrides['n_threads'] = args.threads
    if args.log_level is not None:
        overrides['log_level'] = args.log_level
    if args.reference_fasta is not None:
        overrides['clade__reference_fasta'] = args.reference_fasta.expanduser()
    if args.no_clade:
        overrides['clade__run_clade_analysis'] = False
    if args.sample_sheet is not None:
        overrides['sample_labels'] = load_sample_sheet(args.sample_sheet)

    if overrides:
        cfg = cfg.update(**overrides)

    return cfg


def main_run(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the 'run' subcommand."""
    parser = build_run_parser()
    args = parser.parse_args(argv)

    try:
        cfg = build_config(args)
    except (FileNotFoundError, ValueError, TypeError) as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return 1

    work_dir = cfg.work_dir.resolve()
    if not work_dir.is_dir():
        print(f"Error: Working directory not found: {work_dir}", file=sys.stderr)
        return 1
    cfg = cfg.update(work_dir=work_dir)

    log_file = work_dir / f"{cfg.batch_id}_pipeline.log"
    utils.setup_logging(log_level=cfg.log_level, log_file=str(log_file))

    for warning in config.validate_config(cfg):
        logger.warning(warning)

    try:
        results = core.run_pipeline(
            cfg,
            start_stage=args.start_stage,
            stop_stage=args.stop_stage,
        )
        return 0 if results['success'] else 1

    except KeyboardInterrupt:
        print("\n\nPipeline interrupted by user", file=sys.stderr)
        return 130
    except utils.IAVBatchError as e:
        print(f"\nError: {e}", file=sys.stderr)
        print(f"Check log file: {log_file}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Pipeline failed with error: {e}", exc_info=True)
        print(f"\nError: Pipeline failed. Check log file: {log_file}", file=sys.stderr)
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    if argv is None:
        argv = sys.argv[1:]

    # Subcommands:
    #   iavbatch init-config ...
    #   iavbatch run ...   (also the default when no subcommand is given)
    if argv and argv[0] == "init-config":
        return main_init_config(argv[1:])
    if argv and argv[0] == "run":
        argv = argv[1:]
    return main_run(argv)


if __name__ == '__main__':
    sys.exit(main())
