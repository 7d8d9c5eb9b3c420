from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from serology_analysis.significance import compare_categorical, compare_continuous
from serology_analysis.tables import (
    RoundingPolicy,
    VariableSpec,
    build_comparison_table,
    category_counts,
    concat_panels,
    variable_specs_from_cfg,
)


@pytest.fixture
def records() -> pd.DataFrame:
    rng = np.random.default_rng(7)
    n = 40
    return pd.DataFrame(
        {
            "participant_id": [f"P{i}" for i in range(n)],
            "infection_status": ["Prior"] * 15 + ["NoPrior"] * 25,
            "igg_s": np.concatenate([rng.lognormal(8, 0.5, 15), rng.lognormal(6, 0.5, 25)]),
            "igg_s_pos": (["Positive"] * 13 + [None] * 2) + (["Positive"] * 10 + ["Negative"] * 15),
            "ace2_ge50": pd.array([True] * 12 + [False] * 3 + [True] * 5 + [False] * 18 + [None] * 2, dtype="boolean"),
        }
    )


def test_category_counts_sum_to_non_missing(records):
    for name in ("igg_s_pos", "ace2_ge50"):
        spec = VariableSpec(name=name, kind="categorical")
        counts = category_counts(records, spec, strata="infection_status", strata_levels=["Prior", "NoPrior"])
        assert int(counts.to_numpy().sum()) == int(records[name].notna().sum())


def test_include_missing_adds_level(records):
    spec = VariableSpec(name="igg_s_pos", kind="categorical", levels=("Positive", "Negative"), include_missing=True)
    counts = category_counts(records, spec, strata="infection_status", strata_levels=["Prior", "NoPrior"])
    assert counts.index.tolist() == ["Positive", "Negative", "Missing"]
    assert counts.loc["Missing", "Prior"] == 2
    assert int(counts.to_numpy().sum()) == len(records)


def test_table_layout(records):
    variables = [
        VariableSpec(name="igg_s", kind="continuous", label="IgG-S"),
        VariableSpec(name="igg_s_pos", kind="categorical", label="IgG-S positive", levels=("Positive", "Negative")),
        VariableSpec(name="ace2_ge50", kind="categorical", label="ACE2 >= 50%", levels=("Yes", "No")),
    ]
    table = build_comparison_table(
        records, variables, strata="infection_status", strata_levels=["Prior", "NoPrior"], panel="Baseline"
    )
    assert list(table.columns) == ["panel", "variable", "level", "row_label", "Prior", "NoPrior", "p_value", "test"]
    assert table.loc[0, "row_label"] == "N"
    assert (table.loc[0, "Prior"], table.loc[0, "NoPrior"]) == ("15", "25")

    cont = table[table["variable"] == "igg_s"].iloc[0]
    assert cont["row_label"] == "IgG-S, median [IQR]"
    assert cont["test"] == "Mann-Whitney U"
    assert cont["p_value"] == "<0.001"

    pos = table[table["variable"] == "igg_s_pos"]
    assert pos["level"].tolist() == ["", "Positive", "Negative"]
    assert pos.iloc[1]["Prior"] == "13 (100.0%)"
    assert pos.iloc[2]["NoPrior"] == "15 (60.0%)"
    assert pos.iloc[0]["test"] == "Chi-square"

    ace2 = table[table["variable"] == "ace2_ge50"]
    assert ace2["level"].tolist() == ["", "Yes", "No"]
    assert ace2.iloc[1]["NoPrior"] == "5 (21.7%)"


def test_normal_variables_use_mean_and_welch(records):
    records = records.assign(log_igg_s=np.log(records["igg_s"]))
    table = build_comparison_table(
        records,
        [VariableSpec(name="log_igg_s", kind="continuous", distribution="normal")],
        strata="infection_status",
    )
    row = table.iloc[1]
    assert row["row_label"] == "log_igg_s, mean (SD)"
    assert row["test"] == "Welch t-test"
    # Without explicit levels strata are sorted.
    assert list(table.columns[4:6]) == ["NoPrior", "Prior"]


def test_fewer_than_two_strata_raises(records):
    only_prior = records[records["infection_status"] == "Prior"]
    with pytest.raises(ValueError, match="at least 2 levels"):
        build_comparison_table(only_prior, [VariableSpec(name="igg_s", kind="continuous")], strata="infection_status")


def test_uncomputable_test_gives_blank_p_value(records):
    table = build_comparison_table(
        records.assign(igg_s=np.where(records["infection_status"] == "Prior", np.nan, records["igg_s"])),
        [VariableSpec(name="igg_s", kind="continuous")],
        strata="infection_status",
        strata_levels=["Prior", "NoPrior"],
    )
    assert table.iloc[1]["p_value"] == ""
    assert table.iloc[1]["Prior"] == ""


def test_unknown_variable_raises(records):
    with pytest.raises(ValueError, match="not found"):
        build_comparison_table(records, [VariableSpec(name="age", kind="continuous")], strata="infection_status")


def test_concat_panels_aligns_strata(records):
    a = build_comparison_table(
        records, [VariableSpec(name="igg_s", kind="continuous")], strata="infection_status",
        strata_levels=["Prior", "NoPrior"], panel="a",
    )
    shifted = records.assign(group=np.where(records["infection_status"] == "Prior", "Baseline Prior", "AfterDose1 NoPrior"))
    b = build_comparison_table(
        shifted, [VariableSpec(name="igg_s", kind="continuous")], strata="group",
        strata_levels=["Baseline Prior", "AfterDose1 NoPrior"], panel="b",
    )
    out = concat_panels([a, b])
    assert out["panel"].tolist() == ["a", "a", "b", "b"]
    assert list(out.columns) == [
        "panel", "variable", "level", "row_label", "Prior", "NoPrior", "Baseline Prior", "AfterDose1 NoPrior", "p_value", "test",
    ]
    assert out.isna().sum().sum() == 0


def test_rounding_and_config():
    policy = RoundingPolicy.from_cfg({"tables": {"rounding": {"p_digits": 2, "percent_digits": 0}}})
    assert policy.format_p(0.004) == "<0.01"
    assert policy.format_p(0.25) == "0.25"
    assert policy.format_p(float("nan")) == ""
    assert policy.format_n_pct(1, 3) == "1 (33%)"
    specs = variable_specs_from_cfg([{"name": "sex", "kind": "categorical", "levels": ["F", "M"]}])
    assert specs[0].levels == ("F", "M")
    with pytest.raises(ValueError):
        VariableSpec.from_cfg({"name": "x", "kind": "ordinal"})


def test_small_rxc_table_uses_permutation_test():
    table = np.array([[6, 0, 0], [0, 6, 0], [0, 0, 6]])
    first = compare_categorical(table)
    assert first.test == "Permutation chi-square"
    assert first.statistic == pytest.approx(stats.chi2_contingency(table, correction=False)[0])
    assert first.p_value < 0.01
    # Fixed seed: rebuilding tables gives the same p-value.
    assert compare_categorical(table) == first

    balanced = compare_categorical(np.array([[2, 2, 2], [2, 2, 2]]))
    assert balanced.statistic == pytest.approx(0.0)
    assert balanced.p_value == pytest.approx(1.0)


def test_categorical_test_selection():
    assert compare_categorical(np.array([[2, 8], [9, 1]])).test == "Fisher exact"
    assert compare_categorical(np.array([[30, 20], [25, 35]])).test == "Chi-square"
    assert compare_categorical(np.array([[1, 2], [3, 1], [0, 4]])).test == "Permutation chi-square"
    assert np.isnan(compare_categorical(np.array([[5, 0], [7, 0]])).p_value)
    assert compare_continuous([np.array([1.0, 2.0]), np.array([3.0, 4.0]), np.array([5.0, 6.0])], distribution="nonparametric").test == "Kruskal-Wallis"
