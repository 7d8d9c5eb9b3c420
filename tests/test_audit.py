from __future__ import annotations

import pandas as pd

from serology_analysis.audit import write_analysis_rules, write_exclusion_summary
from serology_analysis.config import default_coding
from serology_analysis.figures import render_plot_sets


def test_exclusion_summary_counts_by_reason(tmp_path):
    exclusions = pd.DataFrame(
        {
            "reason": ["invalid_date_window", "invalid_date_window", "missing_join_key"],
            "detail": ["outside_window", "missing_dose_date", "participant absent from survey"],
            "participant_id": ["P3", "P3", "P9"],
            "visit_stage": ["Baseline", "AfterDose2", "Baseline"],
            "field": ["draw_date", "draw_date", "participant_id"],
        }
    )
    flow = pd.DataFrame([{"step": "joined", "n_rows": 7, "n_participants": 3, "note": ""}])
    out = tmp_path / "exclusion_summary.md"
    write_exclusion_summary(out_path=out, exclusions=exclusions, flow=flow)
    text = out.read_text(encoding="utf-8")
    assert "| invalid_date_window |" in text
    assert "outside_window" in text
    assert "joined" in text

    write_exclusion_summary(out_path=out, exclusions=exclusions.iloc[0:0], flow=flow)
    assert "No rows were excluded." in out.read_text(encoding="utf-8")


def test_analysis_rules_lists_precedence(tmp_path):
    out = tmp_path / "analysis_rules.md"
    write_analysis_rules(out_path=out, coding=default_coding(), overrides={"P1": "no_history"}, symptom_types=["Fever"])
    text = out.read_text(encoding="utf-8")
    order = [text.index(f"`{name}`") for name in ("chart_review_no_history", "baseline_igg_n", "pcr_after_dose1", "default")]
    assert order == sorted(order)
    assert "7-21 days after dose 2" in text
    assert "Chart-review overrides supplied by configuration: 1" in text
    assert "Fever" in text


def test_figures_render_from_plot_sets(tmp_path):
    points = pd.DataFrame(
        {
            "participant_id": ["A", "B", "A", "B"],
            "metric": "igg_s",
            "visit_stage": ["Baseline", "Baseline", "AfterDose1", "AfterDose1"],
            "metric_value": [40.0, 3.0, 5200.0, 800.0],
            "stratum_label": ["Prior", "NoPrior", "Prior", "NoPrior"],
        }
    )
    plots = tmp_path / "plots"
    plots.mkdir()
    points.to_csv(plots / "igg_s_primary.csv", index=False)
    points.iloc[0:0].to_csv(plots / "igg_s_sensitivity.csv", index=False)

    written = render_plot_sets(sorted(plots.glob("*.csv")), tmp_path / "figures")
    assert [p.name for p in written] == ["igg_s_primary.png"]
    assert written[0].stat().st_size > 0
