#!/usr/bin/env python

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from serology_analysis.config import load_yaml
from serology_analysis.pipeline import ensure_pipeline_dirs, render_figures


def main() -> None:
    parser = argparse.ArgumentParser(description="Render figures from the plot-ready sets in plots/.")
    parser.add_argument("--config", type=Path, default=Path("config/pipeline.yaml"))
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    cfg = load_yaml(args.config)
    dirs = ensure_pipeline_dirs(cfg)
    written = render_figures(cfg, dirs)
    if not written:
        logging.getLogger(__name__).warning("No figures written; run 02_build_tables.py first")


if __name__ == "__main__":
    main()
