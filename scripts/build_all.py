#!/usr/bin/env python

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from serology_analysis.config import load_yaml
from serology_analysis.pipeline import run_pipeline


def main() -> None:
    parser = argparse.ArgumentParser(description="Build the serology analysis record set, comparison tables and plot sets.")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config/pipeline.yaml"),
        help="Pipeline YAML config path",
    )
    parser.add_argument("--figures", action="store_true", help="Render figures even if figures.enabled is false")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    cfg = load_yaml(args.config)
    if args.figures:
        cfg.setdefault("figures", {})["enabled"] = True
    run_pipeline(cfg, args.config)


if __name__ == "__main__":
    main()
