"""
Shared fixtures: a three-participant cohort in the raw CSV shape.

P1 has only a Baseline draw with IgG-N 2.0, P2 has all three visits inside
their windows, P3 has every draw outside its window.
"""

from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest
import yaml

SYMPTOM_TYPES = ["Fatigue", "Headache"]


def _frame(rows: list[dict]) -> pd.DataFrame:
    return pd.DataFrame(rows).astype("string")


def _assays(pid: str, stage: str, draw: str, igg_n: str, igm_s: str, igg_s: str, ace2: str) -> list[dict]:
    values = {"IgG-N": igg_n, "IgM-S": igm_s, "IgG-S": igg_s, "ACE2": ace2}
    return [
        {"participant_id": pid, "visit_stage": stage, "draw_date": draw, "assay_type": assay, "value": value}
        for assay, value in values.items()
    ]


@pytest.fixture
def antibodies() -> pd.DataFrame:
    rows: list[dict] = []
    rows += _assays("P1", "Baseline", "2021-01-08", "2.0", "0.4", "30", "12")
    rows += _assays("P2", "Baseline", "2021-01-09", "0.2", "0.3", "5", "2")
    rows += _assays("P2", "AfterDose1", "2021-01-24", "0.3", "1.5", "900", "40")
    rows += _assays("P2", "AfterDose2", "2021-02-14", "0.3", "2.0", "4160", "95")
    # Ten days after dose 1, two days after dose 1, 43 days after dose 2.
    rows += _assays("P3", "Baseline", "2021-01-20", "0.1", "0.2", "3", "1")
    rows += _assays("P3", "AfterDose1", "2021-01-12", "0.1", "0.9", "40", "8")
    rows += _assays("P3", "AfterDose2", "2021-03-15", "0.2", "1.1", "700", "60")
    return _frame(rows)


@pytest.fixture
def participants() -> pd.DataFrame:
    return _frame(
        [
            {"participant_id": pid, "dose1_date": "2021-01-10", "dose2_date": "2021-01-31", "age": age, "sex": sex}
            for pid, age, sex in (("P1", "34", "F"), ("P2", "51", "M"), ("P3", "45", "F"))
        ]
    )


@pytest.fixture
def survey() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "participant_id": ["P1", "P2", "P3"],
            "self_report_answer": ["No", "No", "Yes"],
            "pcr_positive_date": [pd.NA, pd.NA, pd.NA],
        }
    ).astype("string")


@pytest.fixture
def symptoms() -> pd.DataFrame:
    return _frame(
        [
            {"participant_id": "P2", "visit_stage": "AfterDose1", "symptom_type": "Fatigue", "severity": "Mild", "timing": "3 days"},
            {"participant_id": "P2", "visit_stage": "AfterDose1", "symptom_type": "Headache", "severity": "Mild", "timing": "1 day"},
            {"participant_id": "P2", "visit_stage": "AfterDose2", "symptom_type": "Fatigue", "severity": "Severe", "timing": "<1 day"},
            {"participant_id": "P2", "visit_stage": "AfterDose2", "symptom_type": "Hiccups", "severity": "Mild", "timing": "1 day"},
        ]
    )


@pytest.fixture
def pipeline_config(tmp_path: Path, antibodies, participants, survey, symptoms) -> tuple[dict, Path]:
    """Raw CSVs and a YAML config under tmp_path, in the layout the scripts expect."""
    raw = tmp_path / "raw"
    raw.mkdir()
    antibodies.to_csv(raw / "antibodies.csv", index=False)
    participants.to_csv(raw / "vaccination_dates.csv", index=False)
    survey.to_csv(raw / "survey.csv", index=False)
    symptoms.to_csv(raw / "symptoms.csv", index=False)

    cfg = {
        "sources": {
            "antibodies": str(raw / "antibodies.csv"),
            "vaccination_dates": str(raw / "vaccination_dates.csv"),
            "survey": str(raw / "survey.csv"),
            "symptoms": str(raw / "symptoms.csv"),
        },
        "outputs": {"root_dir": str(tmp_path / "out")},
        "symptoms": {"types": list(SYMPTOM_TYPES)},
        "tables": {
            "demographics": [
                {"name": "age", "kind": "continuous", "label": "Age"},
                {"name": "sex", "kind": "categorical", "label": "Sex"},
            ]
        },
        "figures": {"enabled": False, "metrics": ["igg_s"]},
    }
    config_path = tmp_path / "pipeline.yaml"
    config_path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return cfg, config_path
