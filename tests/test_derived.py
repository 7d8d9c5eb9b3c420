from __future__ import annotations

import numpy as np
import pandas as pd

from serology_analysis.derived import (
    NEGATIVE,
    POSITIVE,
    add_derived_variables,
    nonpositive_log_inputs,
    normalize_assay,
    safe_log,
)
from serology_analysis.utils import normalize_label


def _records(**values) -> pd.DataFrame:
    n = len(next(iter(values.values())))
    df = pd.DataFrame({"participant_id": [f"P{i}" for i in range(n)], "visit_stage": "AfterDose1"})
    for k, v in values.items():
        df[k] = v
    return df


def test_igg_s_thresholds():
    out = add_derived_variables(_records(igg_s=[50.0, 49.99, 4160.0, 4159.0, np.nan]))
    assert out["igg_s_pos"].tolist()[:4] == [POSITIVE, NEGATIVE, POSITIVE, POSITIVE]
    assert pd.isna(out.loc[4, "igg_s_pos"])
    assert out["igg_s_neutralizing"].tolist()[:4] == [False, False, True, False]
    assert pd.isna(out.loc[4, "igg_s_neutralizing"])


def test_other_flags():
    out = add_derived_variables(_records(igg_n=[1.4, 1.39], igm_s=[1.0, 0.99], ace2=[50.0, 49.9]))
    assert out["igg_n_pos"].tolist() == [POSITIVE, NEGATIVE]
    assert out["igm_s_pos"].tolist() == [POSITIVE, NEGATIVE]
    assert out["ace2_ge50"].tolist() == [True, False]


def test_log_of_nonpositive_is_missing():
    logged = safe_log(pd.Series([np.e, 0.0, -1.0, np.nan]))
    assert logged.iloc[0] == 1.0
    assert logged.iloc[1:].isna().all()

    out = add_derived_variables(_records(ace2=[0.0, 25.0]))
    assert np.isnan(out.loc[0, "log_ace2"])
    assert np.isclose(out.loc[1, "log_ace2"], np.log(25.0))

    bad = nonpositive_log_inputs(out)
    assert bad[["participant_id", "field"]].values.tolist() == [["P0", "ace2"]]
    assert bad["detail"].tolist() == ["value=0"]


def test_assay_labels():
    assert normalize_assay(normalize_label("IgG-N")) == "igg_n"
    assert normalize_assay(normalize_label("Anti-S IgG")) == "igg_s"
    assert normalize_assay(normalize_label("ACE2 binding inhibition")) == "ace2"
    assert normalize_assay(normalize_label("IgA")) is None
