#!/usr/bin/env python

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from serology_analysis.config import load_yaml
from serology_analysis.pipeline import build_cohort, build_tables, ensure_pipeline_dirs, write_manifests, write_tables


def main() -> None:
    parser = argparse.ArgumentParser(description="Build comparison tables, symptom tables and plot-ready sets.")
    parser.add_argument("--config", type=Path, default=Path("config/pipeline.yaml"))
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    cfg = load_yaml(args.config)
    # Tables are rebuilt from the sources so column dtypes match the in-memory record set.
    build = build_cohort(cfg)
    table_set = build_tables(cfg, build.records)
    dirs = ensure_pipeline_dirs(cfg)
    write_tables(dirs, table_set)
    write_manifests(dirs, args.config)


if __name__ == "__main__":
    main()
