from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

import pandas as pd

from serology_analysis.config import InfectionCoding
from serology_analysis.derived import ASSAYS, add_derived_variables, nonpositive_log_inputs, normalize_assay
from serology_analysis.infection import collect_evidence, resolve_participants
from serology_analysis.symptoms import symptom_wide, unknown_symptom_types, unreadable_symptom_labels
from serology_analysis.utils import add_provenance, normalize_label, parse_date_series, require_columns, require_rows
from serology_analysis.windows import (
    BASELINE,
    STAGES,
    days_since_relevant_dose,
    normalize_stage,
    valid_window_mask,
    window_failure_reason,
)

logger = logging.getLogger(__name__)

ANTIBODY_COLUMNS = ["participant_id", "visit_stage", "draw_date", "assay_type", "value"]
PARTICIPANT_COLUMNS = ["participant_id", "dose1_date", "dose2_date"]
SURVEY_COLUMNS = ["participant_id", "self_report_answer", "pcr_positive_date"]
SYMPTOM_COLUMNS = ["participant_id", "visit_stage", "symptom_type", "severity", "timing"]
EXCLUSION_COLUMNS = ["reason", "detail", "participant_id", "visit_stage", "field"]

_PROVENANCE = {"source_file", "source_row"}


@dataclass(frozen=True)
class CohortBuild:
    records: pd.DataFrame
    exclusions: pd.DataFrame
    flow: pd.DataFrame


def _column(value: object, index: pd.Index) -> object:
    if isinstance(value, pd.Series):
        if not value.index.equals(index):
            value = value.reindex(index)
        return value.astype("string").values
    return value


class _ExclusionLog:
    def __init__(self) -> None:
        self._frames: list[pd.DataFrame] = []

    def add(self, df: pd.DataFrame, *, reason: str, detail: object = "", field: object = "") -> None:
        if df.empty:
            return
        rows = pd.DataFrame(
            {
                "reason": reason,
                "detail": _column(detail, df.index),
                "participant_id": df["participant_id"].astype("string").values,
                "visit_stage": df["visit_stage"].astype("string").values if "visit_stage" in df.columns else pd.NA,
                "field": _column(field, df.index),
            },
            index=range(len(df)),
        )
        self._frames.append(rows)

    def frame(self) -> pd.DataFrame:
        if not self._frames:
            return pd.DataFrame(columns=EXCLUSION_COLUMNS)
        return pd.concat(self._frames, ignore_index=True).loc[:, EXCLUSION_COLUMNS]


def _flow(step: str, df: pd.DataFrame, note: str) -> dict:
    return {"step": step, "n_rows": int(len(df)), "n_participants": int(df["participant_id"].nunique(dropna=True)), "note": note}


def _strip_ids(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df["participant_id"] = df["participant_id"].astype("string").str.strip()
    return df[df["participant_id"].notna() & (df["participant_id"] != "")]


def _canonical_panels(antibodies: pd.DataFrame, log: _ExclusionLog) -> pd.DataFrame:
    df = add_provenance(_strip_ids(antibodies), "antibodies")
    df["visit_stage_raw"] = df["visit_stage"].astype("string")
    df["visit_stage"] = df["visit_stage"].map(normalize_stage)
    unknown_stage = df["visit_stage"].isna()
    stray = df[unknown_stage].copy()
    stray["visit_stage"] = stray["visit_stage_raw"]
    log.add(stray, reason="unknown_visit_stage", detail=stray["visit_stage_raw"], field="visit_stage")
    df = df[~unknown_stage].copy()

    df["assay"] = df["assay_type"].map(normalize_label).map(normalize_assay)
    unknown_assay = df["assay"].isna()
    log.add(df[unknown_assay], reason="unknown_assay_type", detail=df.loc[unknown_assay, "assay_type"], field="assay_type")
    df = df[~unknown_assay].copy()

    df["value_raw"] = df["value"].astype("string")
    df["value"] = pd.to_numeric(df["value"], errors="coerce")
    non_numeric = df["value"].isna() & df["value_raw"].notna()
    log.add(df[non_numeric], reason="non_numeric_value", detail=df.loc[non_numeric, "value_raw"], field="value")

    df["draw_date"], df["draw_date_raw"] = parse_date_series(df["draw_date"])

    exact_key = ["participant_id", "visit_stage", "draw_date", "assay", "value"]
    exact_dup = df.duplicated(subset=exact_key, keep="first")
    log.add(df[exact_dup], reason="duplicate_row", detail="exact duplicate assay row", field="assay")
    df = df[~exact_dup]

    df = df.sort_values(["participant_id", "visit_stage", "assay", "source_row"], kind="mergesort")
    cell_key = ["participant_id", "visit_stage", "assay"]
    collided = df.duplicated(subset=cell_key, keep="first")
    log.add(
        df[collided],
        reason="assay_value_collision",
        detail=df.loc[collided, "value_raw"].fillna("").radd("dropped value="),
        field="assay",
    )
    df = df[~collided]
    if df.empty:
        raise ValueError("antibody assays has no rows with a known visit stage and assay type")

    panels = df.pivot(index=["participant_id", "visit_stage"], columns="assay", values="value")
    panels = panels.reindex(columns=list(ASSAYS))
    panels.columns.name = None
    panels = panels.reset_index()

    draws = df.sort_values(["participant_id", "visit_stage", "source_row"], kind="mergesort")
    draw_dates = draws.dropna(subset=["draw_date"]).groupby(["participant_id", "visit_stage"], as_index=False)["draw_date"]
    conflicts = draw_dates.nunique().rename(columns={"draw_date": "n_dates"})
    conflicts = conflicts[conflicts["n_dates"] > 1]
    log.add(conflicts, reason="draw_date_conflict", detail="multiple draw dates; earliest source row kept", field="draw_date")
    panels = panels.merge(draw_dates.first(), on=["participant_id", "visit_stage"], how="left")
    return panels


def _canonical_participants(participants: pd.DataFrame, log: _ExclusionLog) -> pd.DataFrame:
    df = add_provenance(_strip_ids(participants), "participants")
    df["dose1_date"], df["dose1_date_raw"] = parse_date_series(df["dose1_date"])
    df["dose2_date"], df["dose2_date_raw"] = parse_date_series(df["dose2_date"])
    df = df.drop_duplicates(subset=[c for c in df.columns if c not in _PROVENANCE and not c.endswith("_raw")], keep="first")
    dup = df.duplicated(subset=["participant_id"], keep="first")
    log.add(df[dup], reason="participant_row_conflict", detail="conflicting vaccination rows; first kept", field="dose1_date")
    df = df[~dup]
    return df.drop(columns=["source_file", "source_row"])


def _parsed_or_raw(parsed: object, raw: object) -> object:
    return raw if pd.isna(parsed) else parsed


def _exclude_missing_keys(
    panels: pd.DataFrame, ids: set[str], *, source: str, log: _ExclusionLog
) -> pd.DataFrame:
    missing = ~panels["participant_id"].isin(ids)
    log.add(panels[missing], reason="missing_join_key", detail=f"participant absent from {source}", field="participant_id")
    return panels[~missing].copy()


def build_analysis_records(
    *,
    antibodies: pd.DataFrame,
    participants: pd.DataFrame,
    survey: pd.DataFrame,
    symptoms: pd.DataFrame | None = None,
    symptom_types: list[str] | None = None,
    overrides: Mapping[str, str] | None = None,
    coding: InfectionCoding | None = None,
) -> CohortBuild:
    """Join, window-filter, classify and derive the canonical per-visit record set."""
    require_columns(antibodies, ANTIBODY_COLUMNS, label="antibody assays")
    require_columns(participants, PARTICIPANT_COLUMNS, label="vaccination dates")
    require_columns(survey, SURVEY_COLUMNS, label="survey")
    require_rows(antibodies, label="antibody assays")
    require_rows(participants, label="vaccination dates")

    log = _ExclusionLog()
    flow: list[dict] = []

    panels = _canonical_panels(antibodies, log)
    flow.append(_flow("antibody_panels", panels, "one row per (participant, visit) after label normalization"))

    people = _canonical_participants(participants, log)
    survey = _strip_ids(survey)
    panels = _exclude_missing_keys(panels, set(people["participant_id"]), source="vaccination dates", log=log)
    panels = _exclude_missing_keys(panels, set(survey["participant_id"]), source="survey", log=log)
    panels = panels.merge(people, on="participant_id", how="left")
    flow.append(_flow("joined", panels, "participants present in vaccination and survey sources"))

    draw = panels["draw_date"].dt.normalize()
    panels["days_since_dose1"] = (draw - panels["dose1_date"].dt.normalize()).dt.days
    panels["days_since_dose2"] = (draw - panels["dose2_date"].dt.normalize()).dt.days
    panels["days_since_relevant_dose"] = days_since_relevant_dose(panels)

    valid = valid_window_mask(panels)
    invalid = panels.loc[~valid]
    reasons = [
        window_failure_reason(
            r.draw_date,
            _parsed_or_raw(r.dose1_date, r.dose1_date_raw),
            _parsed_or_raw(r.dose2_date, r.dose2_date_raw),
            r.visit_stage,
        )
        for r in invalid.itertuples(index=False)
    ]
    log.add(invalid, reason="invalid_date_window", detail=pd.Series(reasons, index=invalid.index, dtype="string"), field="draw_date")
    records = panels.loc[valid].drop(columns=["dose1_date_raw", "dose2_date_raw"])
    flow.append(_flow("valid_window", records, "draw date inside the visit window"))

    pids = sorted(records["participant_id"].unique())
    baseline = records[records["visit_stage"] == BASELINE]
    evidence = collect_evidence(
        participant_ids=pids,
        survey=survey,
        dose1_dates=dict(zip(records["participant_id"], records["dose1_date"])),
        baseline_igg_n=dict(zip(baseline["participant_id"], baseline["igg_n"])),
        overrides=overrides,
        coding=coding,
    )
    status = resolve_participants(evidence)
    records = records.merge(status, on="participant_id", how="left")

    records = add_derived_variables(records)
    bad_log = nonpositive_log_inputs(records)
    log.add(bad_log, reason="undefined_log_transform", detail=bad_log["detail"], field=bad_log["field"])

    if symptoms is not None:
        require_columns(symptoms, SYMPTOM_COLUMNS, label="symptoms")
        types = list(symptom_types or [])
        if not types:
            raise ValueError("symptom_types must be provided together with symptoms")
        stray = unknown_symptom_types(symptoms, types).copy()
        stray["visit_stage"] = stray["visit_stage"].map(normalize_stage)
        log.add(stray, reason="unknown_symptom_type", detail=stray["symptom_type"], field="symptom_type")
        unreadable = unreadable_symptom_labels(symptoms.drop(index=stray.index))
        unreadable["visit_stage"] = unreadable["visit_stage"].map(normalize_stage)
        log.add(unreadable, reason="unreadable_symptom_label", detail=unreadable["detail"], field=unreadable["field"])
        wide = symptom_wide(symptoms, types)
        records = records.merge(wide, on=["participant_id", "visit_stage"], how="left")

    before = len(records)
    records = records.drop_duplicates().reset_index(drop=True)
    if len(records) != before:
        logger.info("Dropped %d duplicate analysis rows from join fan-out", before - len(records))

    records["_stage_order"] = records["visit_stage"].map({s: i for i, s in enumerate(STAGES)})
    records = records.sort_values(["participant_id", "_stage_order"], kind="mergesort")
    records = records.drop(columns=["_stage_order"]).reset_index(drop=True)
    flow.append(_flow("analysis_records", records, "final AnalysisRecord set"))

    exclusions = log.frame()
    logger.info(
        "Built %d analysis records for %d participants (%d exclusion rows)",
        len(records),
        records["participant_id"].nunique(),
        len(exclusions),
    )
    return CohortBuild(records=records, exclusions=exclusions, flow=pd.DataFrame(flow))
