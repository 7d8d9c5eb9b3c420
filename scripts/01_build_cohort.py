#!/usr/bin/env python

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from serology_analysis.config import load_yaml
from serology_analysis.pipeline import build_cohort, ensure_pipeline_dirs, write_cohort_outputs


def main() -> None:
    parser = argparse.ArgumentParser(description="Build core/analysis_records.csv and the cohort audit files.")
    parser.add_argument("--config", type=Path, default=Path("config/pipeline.yaml"))
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    cfg = load_yaml(args.config)
    build = build_cohort(cfg)
    write_cohort_outputs(cfg, ensure_pipeline_dirs(cfg), build)


if __name__ == "__main__":
    main()
