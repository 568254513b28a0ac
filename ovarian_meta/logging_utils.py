from __future__ import annotations

import logging
import sys
from pathlib import Path

NOISY_LOGGERS = ("matplotlib", "PIL")


def configure_logging(*, out_dir: Path, level: str = "INFO", log_file: Path | None = None) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    if log_file is None:
        log_file = out_dir / "run.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)

    # Re-entry from the CLI or tests must not stack handlers.
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    sh = logging.StreamHandler(sys.stdout)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root.addHandler(sh)

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    # Font and PNG debug output drowns the per-gene messages at DEBUG.
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # lifelines reports convergence trouble through warnings.
    logging.captureWarnings(True)
