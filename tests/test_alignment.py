from __future__ import annotations

import pandas as pd
import pytest

from serology_analysis.alignment import (
    GROUP_COLUMN,
    comparison_panels,
    complete_participants,
    matched_groups,
    plot_records,
    sensitivity_subset,
    shifted_groups,
)


@pytest.fixture
def records() -> pd.DataFrame:
    rows = [
        ("A", "Baseline", "Prior", 2.0),
        ("A", "AfterDose1", "Prior", 3000.0),
        ("A", "AfterDose2", "Prior", 9000.0),
        ("B", "Baseline", "NoPrior", 5.0),
        ("B", "AfterDose1", "NoPrior", 400.0),
        ("B", "AfterDose2", "NoPrior", None),
        ("C", "Baseline", "NoPrior", 4.0),
        ("C", "AfterDose2", "NoPrior", 2500.0),
        ("D", "AfterDose1", "Prior", 5000.0),
    ]
    return pd.DataFrame(rows, columns=["participant_id", "visit_stage", "infection_status", "igg_s"])


def test_matched_groups_split_by_status(records):
    out = matched_groups(records, "AfterDose1")
    assert set(out["visit_stage"]) == {"AfterDose1"}
    assert list(out[GROUP_COLUMN].cat.categories) == ["Prior", "NoPrior"]
    assert out[GROUP_COLUMN].astype(str).tolist() == ["Prior", "NoPrior", "Prior"]


def test_shifted_groups_pair_prior_with_next_visit(records):
    out = shifted_groups(records, "Baseline")
    prior = out[out["infection_status"] == "Prior"]
    naive = out[out["infection_status"] == "NoPrior"]
    assert set(prior["visit_stage"]) == {"Baseline"}
    assert set(naive["visit_stage"]) == {"AfterDose1"}
    assert list(out[GROUP_COLUMN].cat.categories) == ["Baseline Prior", "AfterDose1 NoPrior"]

    out2 = shifted_groups(records, "AfterDose1")
    assert sorted(zip(out2["participant_id"], out2["visit_stage"])) == [
        ("A", "AfterDose1"),
        ("B", "AfterDose2"),
        ("C", "AfterDose2"),
        ("D", "AfterDose1"),
    ]
    with pytest.raises(ValueError):
        shifted_groups(records, "AfterDose2")


def test_sensitivity_subset_requires_all_stages(records):
    assert complete_participants(records) == ["A", "B"]
    assert set(sensitivity_subset(records)["participant_id"]) == {"A", "B"}


def test_grouping_does_not_modify_records(records):
    before = records.copy()
    comparison_panels(records)
    pd.testing.assert_frame_equal(records, before)


def test_comparison_panels_cover_both_families(records):
    panels = comparison_panels(records)
    keys = [(p.family, p.comparison, p.panel) for p in panels]
    assert len(keys) == 10
    assert keys[:4] == [
        ("primary", "matched", "Baseline"),
        ("primary", "matched", "AfterDose1"),
        ("primary", "matched", "AfterDose2"),
        ("primary", "shifted", "Baseline Prior vs AfterDose1 NoPrior"),
    ]
    sensitivity = [p for p in panels if p.family == "sensitivity"]
    assert all(set(p.frame["participant_id"]) <= {"A", "B"} for p in sensitivity)


def test_plot_records_drop_missing_values(records):
    out = plot_records(records, "igg_s")
    assert list(out.columns) == ["participant_id", "metric", "visit_stage", "metric_value", "stratum_label"]
    assert len(out) == len(records) - 1
    assert out["visit_stage"].tolist()[:3] == ["Baseline", "Baseline", "Baseline"]
    assert out["visit_stage"].tolist()[-1] == "AfterDose2"
