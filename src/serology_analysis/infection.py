"""Participant-level prior-infection status.

Status is decided by an ordered list of rules; the first rule whose predicate
holds determines the outcome. The order is fixed by protocol:

1. chart-review override "no history"  -> NoPrior
2. baseline IgG-N >= 1.4                -> Prior
3. self-report positive, PCR absent or before dose 1 -> Prior
4. PCR positive before dose 1           -> Prior
5. PCR positive after dose 1            -> NoPrior (reinfection after vaccination)
6. otherwise                            -> NoPrior
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal, Mapping

import pandas as pd

from serology_analysis.config import (
    OVERRIDE_NO_HISTORY,
    AmbiguousClassificationError,
    InfectionCoding,
    default_coding,
    normalize_override,
)
from serology_analysis.derived import IGG_N_THRESHOLD
from serology_analysis.utils import is_missing, require_columns

InfectionStatus = Literal["Prior", "NoPrior"]

PRIOR: InfectionStatus = "Prior"
NO_PRIOR: InfectionStatus = "NoPrior"
INFECTION_STATUSES: tuple[str, ...] = (PRIOR, NO_PRIOR)


@dataclass(frozen=True)
class InfectionEvidence:
    participant_id: str
    baseline_igg_n: float | None = None
    self_report_positive: bool | None = None
    pcr_positive_date: pd.Timestamp | None = None
    chart_review_override: str | None = None
    dose1_date: pd.Timestamp | None = None

    @property
    def has_pcr(self) -> bool:
        return self.pcr_positive_date is not None

    @property
    def pcr_before_dose1(self) -> bool:
        if self.pcr_positive_date is None or self.dose1_date is None:
            return False
        return self.pcr_positive_date < self.dose1_date

    @property
    def pcr_after_dose1(self) -> bool:
        if self.pcr_positive_date is None or self.dose1_date is None:
            return False
        return self.pcr_positive_date > self.dose1_date


@dataclass(frozen=True)
class InfectionRule:
    name: str
    applies: Callable[[InfectionEvidence], bool]
    outcome: InfectionStatus


INFECTION_RULES: tuple[InfectionRule, ...] = (
    InfectionRule(
        "chart_review_no_history",
        lambda ev: ev.chart_review_override == OVERRIDE_NO_HISTORY,
        NO_PRIOR,
    ),
    InfectionRule(
        "baseline_igg_n",
        lambda ev: ev.baseline_igg_n is not None and ev.baseline_igg_n >= IGG_N_THRESHOLD,
        PRIOR,
    ),
    InfectionRule(
        "self_report_before_dose1",
        lambda ev: ev.self_report_positive is True and (not ev.has_pcr or ev.pcr_before_dose1),
        PRIOR,
    ),
    InfectionRule("pcr_before_dose1", lambda ev: ev.pcr_before_dose1, PRIOR),
    InfectionRule("pcr_after_dose1", lambda ev: ev.pcr_after_dose1, NO_PRIOR),
    InfectionRule("default", lambda ev: True, NO_PRIOR),
)


def resolve_infection_status(
    evidence: InfectionEvidence,
    rules: tuple[InfectionRule, ...] = INFECTION_RULES,
) -> tuple[InfectionStatus, str]:
    for rule in rules:
        if rule.applies(evidence):
            return rule.outcome, rule.name
    raise ValueError("Infection rule list has no catch-all rule")


def _single_value(values: list, *, participant_id: str, field: str) -> object:
    distinct = sorted({v for v in values if v is not None}, key=str)
    if len(distinct) > 1:
        raise AmbiguousClassificationError(
            f"Participant {participant_id} has conflicting {field} values: {distinct}"
        )
    return distinct[0] if distinct else None


def _as_timestamp(value: object) -> pd.Timestamp | None:
    if is_missing(value):
        return None
    ts = pd.to_datetime(value, errors="coerce")
    return None if pd.isna(ts) else pd.Timestamp(ts).normalize()


def _pcr_dates(values: pd.Series, *, participant_id: str) -> list[pd.Timestamp]:
    dates: list[pd.Timestamp] = []
    for value in values:
        ts = _as_timestamp(value)
        if ts is None and not is_missing(value) and str(value).strip():
            raise AmbiguousClassificationError(
                f"Participant {participant_id} has an unreadable pcr_positive_date: {value!r}"
            )
        if ts is not None:
            dates.append(ts)
    return dates


def _as_float(value: object) -> float | None:
    if is_missing(value):
        return None
    v = pd.to_numeric(value, errors="coerce")
    return None if pd.isna(v) else float(v)


def collect_evidence(
    *,
    participant_ids: list[str],
    survey: pd.DataFrame,
    dose1_dates: Mapping[str, object],
    baseline_igg_n: Mapping[str, object],
    overrides: Mapping[str, str] | None = None,
    coding: InfectionCoding | None = None,
) -> list[InfectionEvidence]:
    """Collapse survey rows and injected overrides to one evidence bundle per participant."""
    require_columns(survey, ["participant_id", "self_report_answer", "pcr_positive_date"], label="survey")
    coding = coding or default_coding()
    overrides = {str(k): normalize_override(v) for k, v in (overrides or {}).items()}

    survey = survey.copy()
    survey["participant_id"] = survey["participant_id"].astype("string").str.strip()
    has_override_col = "chart_review_override" in survey.columns
    by_pid = {pid: g for pid, g in survey.groupby("participant_id", sort=False)}

    out: list[InfectionEvidence] = []
    for pid in participant_ids:
        rows = by_pid.get(pid)
        answers: list[bool | None] = []
        pcr_dates: list[pd.Timestamp] = []
        override_values: list[str | None] = []
        if rows is not None:
            answers = [coding.self_report_is_positive(a) for a in rows["self_report_answer"]]
            pcr_dates = _pcr_dates(rows["pcr_positive_date"], participant_id=pid)
            if has_override_col:
                override_values = [normalize_override(v) for v in rows["chart_review_override"]]
        if pid in overrides:
            override_values.append(overrides[pid])

        out.append(
            InfectionEvidence(
                participant_id=pid,
                baseline_igg_n=_as_float(baseline_igg_n.get(pid)),
                self_report_positive=_single_value(answers, participant_id=pid, field="self_report_answer"),
                # Several confirmed positives are not a conflict; the first one counts.
                pcr_positive_date=min(pcr_dates) if pcr_dates else None,
                chart_review_override=_single_value(override_values, participant_id=pid, field="chart_review_override"),
                dose1_date=_as_timestamp(dose1_dates.get(pid)),
            )
        )
    return out


def resolve_participants(evidence: list[InfectionEvidence]) -> pd.DataFrame:
    rows: list[dict] = []
    for ev in evidence:
        status, rule = resolve_infection_status(ev)
        rows.append({"participant_id": ev.participant_id, "infection_status": status, "infection_rule": rule})
    return pd.DataFrame(rows, columns=["participant_id", "infection_status", "infection_rule"])
