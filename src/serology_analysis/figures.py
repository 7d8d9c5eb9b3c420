from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from serology_analysis.infection import INFECTION_STATUSES
from serology_analysis.utils import ensure_dir
from serology_analysis.windows import STAGES

logger = logging.getLogger(__name__)

_STATUS_COLORS = {"Prior": "#c0392b", "NoPrior": "#2c7fb8"}


def _apply_plot_style(plt: object) -> None:
    plt.rcParams.update(  # type: ignore[attr-defined]
        {
            "figure.facecolor": "white",
            "axes.facecolor": "white",
            "savefig.facecolor": "white",
            "font.family": "sans-serif",
            "font.sans-serif": ["Arial", "Helvetica", "DejaVu Sans"],
            "font.size": 10,
            "axes.titlesize": 11,
            "axes.labelsize": 10,
            "legend.fontsize": 9,
            "axes.spines.top": False,
            "axes.spines.right": False,
        }
    )


def render_stage_boxplot(points: pd.DataFrame, out_path: Path, *, title: str, log_scale: bool = False) -> None:
    """Side-by-side boxes per (visit stage, infection status) from a plot-ready set."""
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    _apply_plot_style(plt)
    ensure_dir(out_path.parent)

    width = 0.35
    offsets = {s: (i - (len(INFECTION_STATUSES) - 1) / 2) * width for i, s in enumerate(INFECTION_STATUSES)}
    fig, ax = plt.subplots(figsize=(6.5, 4.0))
    for j, stage in enumerate(STAGES):
        for status in INFECTION_STATUSES:
            vals = points.loc[
                (points["visit_stage"] == stage) & (points["stratum_label"] == status), "metric_value"
            ].to_numpy(float)
            if vals.size == 0:
                continue
            bp = ax.boxplot(
                vals,
                positions=[j + offsets[status]],
                widths=width * 0.9,
                patch_artist=True,
                showfliers=False,
            )
            for box in bp["boxes"]:
                box.set_facecolor(_STATUS_COLORS.get(status, "#999999"))
                box.set_alpha(0.55)
            jitter = np.linspace(-width * 0.25, width * 0.25, vals.size) if vals.size > 1 else np.zeros(1)
            ax.scatter(np.full(vals.size, j + offsets[status]) + jitter, vals, s=8, color="black", alpha=0.6, zorder=3)

    ax.set_xticks(range(len(STAGES)))
    ax.set_xticklabels(list(STAGES))
    if log_scale:
        ax.set_yscale("log")
    ax.set_title(title)
    ax.set_ylabel(str(points["metric"].iloc[0]) if not points.empty else "")
    handles = [
        plt.Rectangle((0, 0), 1, 1, facecolor=_STATUS_COLORS[s], alpha=0.55, label=s) for s in INFECTION_STATUSES
    ]
    ax.legend(handles=handles, frameon=False, loc="upper left")
    fig.savefig(out_path, dpi=200, bbox_inches="tight")
    plt.close(fig)
    logger.info("Wrote figure %s", out_path.as_posix())


def render_plot_sets(plot_paths: list[Path], figures_dir: Path) -> list[Path]:
    out: list[Path] = []
    for p in sorted(plot_paths):
        points = pd.read_csv(p, dtype={"participant_id": "string"})
        if points.empty:
            logger.info("Skipping figure for empty plot set %s", p.name)
            continue
        metric = str(points["metric"].iloc[0])
        positive = bool((points["metric_value"] > 0).all())
        out_path = figures_dir / f"{p.stem}.png"
        render_stage_boxplot(points, out_path, title=metric, log_scale=positive and not metric.startswith("log_"))
        out.append(out_path)
    return out
