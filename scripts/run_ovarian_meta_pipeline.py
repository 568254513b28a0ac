#!/usr/bin/env python
from __future__ import annotations

import argparse
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Ovarian cancer gene-expression survival meta-analysis")
    p.add_argument(
        "--data-dir",
        type=Path,
        required=True,
        help="Directory of <study>.expr.tsv (genes x samples) and <study>.clinical.tsv pairs",
    )
    p.add_argument("--out", type=Path, default=Path("results"), help="Output directory")
    p.add_argument(
        "--exclude",
        type=str,
        nargs="+",
        default=[],
        help="Study names to skip (duplicated patients, incompatible platforms)",
    )
    p.add_argument(
        "--method",
        type=str,
        default="REML",
        choices=["FE", "DL", "REML"],
        help="Between-study model for the random-effects column (FE is always reported)",
    )
    p.add_argument("--max-iterations", type=int, default=1000, help="REML iteration budget")
    p.add_argument("--step-adjustment", type=float, default=0.5, help="REML step length multiplier in (0, 1]")
    p.add_argument("--penalizer", type=float, default=0.0, help="lifelines CoxPHFitter penalizer")
    p.add_argument("--min-samples", type=int, default=10, help="Min complete cases per gene/study Cox fit")
    p.add_argument("--min-study-samples", type=int, default=0, help="Drop studies with fewer samples")
    p.add_argument("--min-study-events", type=int, default=0, help="Drop studies with fewer deaths")
    p.add_argument(
        "--gene-mode",
        type=str,
        default="intersection",
        choices=["intersection", "union"],
        help="Screen genes present in every study, or in any study",
    )
    p.add_argument("--max-genes", type=int, default=0, help="Screen only the first N genes (0=all)")
    p.add_argument("--threads", type=int, default=1, help="Parallel workers for the per-gene loop")
    p.add_argument("--no-plot", action="store_true", help="Skip figures")
    p.add_argument("--overwrite", action="store_true", help="Allow writing into a non-empty output directory")

    p.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console/file log level",
    )
    p.add_argument("--log-file", type=Path, default=None, help="Log file path (default: <out>/run.log)")
    p.add_argument("--no-progress", action="store_true", help="Disable tqdm progress bars")
    return p


def main() -> None:
    args = build_parser().parse_args()
    from ovarian_meta.logging_utils import configure_logging

    configure_logging(out_dir=args.out, level=args.log_level, log_file=args.log_file)
    from ovarian_meta.pipeline import run_pipeline

    run_pipeline(
        data_dir=args.data_dir,
        out_dir=args.out,
        exclude=args.exclude,
        method=args.method,
        max_iterations=args.max_iterations,
        step_adjustment=args.step_adjustment,
        plot=not args.no_plot,
        penalizer=args.penalizer,
        min_samples=args.min_samples,
        min_study_samples=args.min_study_samples,
        min_study_events=args.min_study_events,
        gene_mode=args.gene_mode,
        max_genes=args.max_genes,
        n_jobs=args.threads,
        overwrite=args.overwrite,
        show_progress=not args.no_progress,
    )


if __name__ == "__main__":
    main()
