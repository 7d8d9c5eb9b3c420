from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from serology_analysis.utils import normalize_label


class AmbiguousClassificationError(ValueError):
    """External coding that the fixed precedence order cannot resolve."""


DEFAULT_SELF_REPORT_POSITIVE = ("yes", "y", "positive", "pos", "1", "true")
DEFAULT_SELF_REPORT_NEGATIVE = ("no", "n", "negative", "neg", "0", "false", "unknown", "unsure", "not_sure")

# Chart-review adjudication only ever removes a history of infection.
OVERRIDE_NO_HISTORY = "no_history"
_OVERRIDE_ALIASES = {
    "no_history": OVERRIDE_NO_HISTORY,
    "no": OVERRIDE_NO_HISTORY,
    "no_prior_infection": OVERRIDE_NO_HISTORY,
    "no_infection_history": OVERRIDE_NO_HISTORY,
}


def load_yaml(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected mapping at top-level of {path}, got {type(data)}")
    return data


@dataclass(frozen=True)
class InfectionCoding:
    self_report_positive: frozenset[str]
    self_report_negative: frozenset[str]

    def __post_init__(self) -> None:
        overlap = self.self_report_positive & self.self_report_negative
        if overlap:
            raise AmbiguousClassificationError(
                f"Self-report codes listed as both positive and negative: {sorted(overlap)}"
            )

    def self_report_is_positive(self, answer: object) -> bool | None:
        """Map a raw survey answer to True/False; None means no answer."""
        if answer is None:
            return None
        code = normalize_label(answer)
        if code in {"", "nan", "none", "na", "<na>"}:
            return None
        if code in self.self_report_positive:
            return True
        if code in self.self_report_negative:
            return False
        raise AmbiguousClassificationError(f"Unrecognised self-report answer: {answer!r}")


def default_coding() -> InfectionCoding:
    return InfectionCoding(
        self_report_positive=frozenset(DEFAULT_SELF_REPORT_POSITIVE),
        self_report_negative=frozenset(DEFAULT_SELF_REPORT_NEGATIVE),
    )


def normalize_override(value: object) -> str | None:
    if value is None:
        return None
    # YAML 1.1 reads an unquoted `no` as False.
    if value is False:
        return OVERRIDE_NO_HISTORY
    code = normalize_label(value)
    if code in {"", "nan", "none", "na", "<na>"}:
        return None
    if code in _OVERRIDE_ALIASES:
        return _OVERRIDE_ALIASES[code]
    raise AmbiguousClassificationError(f"Unrecognised chart-review override: {value!r}")


def infection_coding_from_cfg(cfg: dict) -> InfectionCoding:
    section = cfg.get("infection_status", {}) or {}
    pos = section.get("self_report_positive", DEFAULT_SELF_REPORT_POSITIVE)
    neg = section.get("self_report_negative", DEFAULT_SELF_REPORT_NEGATIVE)
    return InfectionCoding(
        self_report_positive=frozenset(normalize_label(v) for v in pos),
        self_report_negative=frozenset(normalize_label(v) for v in neg),
    )


def overrides_from_cfg(cfg: dict) -> dict[str, str]:
    raw = (cfg.get("infection_status", {}) or {}).get("chart_review_overrides") or {}
    if not isinstance(raw, dict):
        raise ValueError("infection_status.chart_review_overrides must be a mapping of participant_id to value")
    out: dict[str, str] = {}
    for pid, value in raw.items():
        code = normalize_override(value)
        if code is not None:
            out[str(pid).strip()] = code
    return out
