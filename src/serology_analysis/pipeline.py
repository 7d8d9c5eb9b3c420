from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from serology_analysis.alignment import GROUP_COLUMN, comparison_panels, plot_records, sensitivity_subset
from serology_analysis.audit import write_analysis_rules, write_exclusion_summary
from serology_analysis.cohort import CohortBuild, build_analysis_records
from serology_analysis.config import infection_coding_from_cfg, overrides_from_cfg
from serology_analysis.figures import render_plot_sets
from serology_analysis.infection import INFECTION_STATUSES
from serology_analysis.manifests import build_signature, build_table_manifest
from serology_analysis.symptoms import ANY_SYMPTOM_COLUMN, paired_symptom_table, unpaired_symptom_table
from serology_analysis.tables import (
    RoundingPolicy,
    VariableSpec,
    build_comparison_table,
    concat_panels,
    variable_specs_from_cfg,
    write_table,
)
from serology_analysis.utils import PipelineDirs, ensure_dir
from serology_analysis.windows import AFTER_DOSE1, AFTER_DOSE2, BASELINE, STAGES, normalize_stage

logger = logging.getLogger(__name__)

DEFAULT_VARIABLES: list[VariableSpec] = [
    VariableSpec(name="igg_n", kind="continuous", label="IgG-N"),
    VariableSpec(name="igm_s", kind="continuous", label="IgM-S"),
    VariableSpec(name="igg_s", kind="continuous", label="IgG-S"),
    VariableSpec(name="ace2", kind="continuous", label="ACE2 binding inhibition (%)"),
    VariableSpec(name="igg_n_pos", kind="categorical", label="IgG-N positive", levels=("Positive", "Negative")),
    VariableSpec(name="igm_s_pos", kind="categorical", label="IgM-S positive", levels=("Positive", "Negative")),
    VariableSpec(name="igg_s_pos", kind="categorical", label="IgG-S positive", levels=("Positive", "Negative")),
    VariableSpec(name="igg_s_neutralizing", kind="categorical", label="IgG-S >= 4160", levels=("Yes", "No")),
    VariableSpec(name="ace2_ge50", kind="categorical", label="ACE2 inhibition >= 50%", levels=("Yes", "No")),
]
DEFAULT_PLOT_METRICS = ["igg_s", "igm_s", "igg_n", "ace2"]


@dataclass(frozen=True)
class TableSet:
    tables: dict[str, pd.DataFrame]
    plots: dict[str, pd.DataFrame]


def ensure_pipeline_dirs(cfg: dict) -> PipelineDirs:
    out = cfg.get("outputs", {}) or {}
    if "root_dir" in out:
        root = Path(out["root_dir"])
        defaults = {k: root / k for k in ("core", "audit", "tables", "plots", "figures", "manifests")}
    else:
        defaults = {}

    def _dir(key: str) -> Path:
        if f"{key}_dir" in out:
            return ensure_dir(Path(out[f"{key}_dir"]))
        if key in defaults:
            return ensure_dir(defaults[key])
        raise ValueError(f"Config is missing outputs.{key}_dir (or outputs.root_dir)")

    return PipelineDirs(
        core_dir=_dir("core"),
        audit_dir=_dir("audit"),
        tables_dir=_dir("tables"),
        plots_dir=_dir("plots"),
        figures_dir=_dir("figures"),
        manifests_dir=_dir("manifests"),
    )


def read_source(cfg: dict, key: str, *, required: bool = True) -> pd.DataFrame | None:
    sources = cfg.get("sources", {}) or {}
    value = sources.get(key)
    if not value:
        if required:
            raise ValueError(f"Config is missing sources.{key}")
        return None
    path = Path(value)
    if not path.exists():
        raise FileNotFoundError(f"Source {key!r} not found: {path.as_posix()}")
    # Read as text so identifiers and codes keep their raw spelling.
    df = pd.read_csv(path, dtype="string", keep_default_na=True)
    logger.info("Read %s: %d rows from %s", key, len(df), path.as_posix())
    return df


def symptom_types_from_cfg(cfg: dict) -> list[str]:
    types = (cfg.get("symptoms", {}) or {}).get("types") or []
    return [str(t) for t in types]


def paired_stages_from_cfg(cfg: dict) -> tuple[str, str]:
    raw = (cfg.get("symptoms", {}) or {}).get("paired_stages") or [AFTER_DOSE1, AFTER_DOSE2]
    if len(raw) != 2:
        raise ValueError(f"symptoms.paired_stages must name exactly two visit stages, got {raw}")
    stages = [normalize_stage(s) for s in raw]
    if any(s is None for s in stages) or stages[0] == stages[1]:
        raise ValueError(f"symptoms.paired_stages must name two different known stages, got {raw}")
    return stages[0], stages[1]  # type: ignore[return-value]


def build_cohort(cfg: dict) -> CohortBuild:
    symptoms = read_source(cfg, "symptoms", required=False)
    types = symptom_types_from_cfg(cfg)
    if symptoms is not None and not types:
        raise ValueError("sources.symptoms is set but symptoms.types is empty")
    build = build_analysis_records(
        antibodies=read_source(cfg, "antibodies"),
        participants=read_source(cfg, "vaccination_dates"),
        survey=read_source(cfg, "survey"),
        symptoms=symptoms,
        symptom_types=types if symptoms is not None else None,
        overrides=overrides_from_cfg(cfg),
        coding=infection_coding_from_cfg(cfg),
    )
    if build.records.empty:
        raise ValueError("No analysis records remain after joins and visit-window filtering")
    return build


def write_cohort_outputs(cfg: dict, dirs: PipelineDirs, build: CohortBuild) -> None:
    build.records.to_csv(dirs.core_dir / "analysis_records.csv", index=False)
    build.exclusions.to_csv(dirs.audit_dir / "exclusions.csv", index=False)
    build.flow.to_csv(dirs.audit_dir / "cohort_flow.csv", index=False)
    write_exclusion_summary(
        out_path=dirs.audit_dir / "exclusion_summary.md",
        exclusions=build.exclusions,
        flow=build.flow,
    )
    write_analysis_rules(
        out_path=dirs.audit_dir / "analysis_rules.md",
        coding=infection_coding_from_cfg(cfg),
        overrides=overrides_from_cfg(cfg),
        symptom_types=symptom_types_from_cfg(cfg),
    )


def antibody_tables(cfg: dict, records: pd.DataFrame, rounding: RoundingPolicy) -> dict[str, pd.DataFrame]:
    variables = variable_specs_from_cfg((cfg.get("tables", {}) or {}).get("variables")) or DEFAULT_VARIABLES
    grouped: dict[str, list[pd.DataFrame]] = {}
    for panel in comparison_panels(records):
        table = build_comparison_table(
            panel.frame,
            variables,
            strata=GROUP_COLUMN,
            strata_levels=panel.strata_levels,
            rounding=rounding,
            panel=panel.panel,
        )
        grouped.setdefault(f"antibody_{panel.family}_{panel.comparison}", []).append(table)
    return {name: concat_panels(parts) for name, parts in grouped.items()}


def demographics_table(cfg: dict, records: pd.DataFrame, rounding: RoundingPolicy) -> pd.DataFrame | None:
    variables = variable_specs_from_cfg((cfg.get("tables", {}) or {}).get("demographics"))
    if not variables:
        return None
    # One row per participant: the earliest retained visit.
    first = records.drop_duplicates(subset=["participant_id"], keep="first")
    return build_comparison_table(
        first,
        variables,
        strata="infection_status",
        strata_levels=list(INFECTION_STATUSES),
        rounding=rounding,
        panel="Participants",
    )


def symptom_tables(cfg: dict, records: pd.DataFrame, rounding: RoundingPolicy) -> dict[str, pd.DataFrame]:
    types = symptom_types_from_cfg(cfg)
    before, after = paired_stages_from_cfg(cfg)
    unpaired = [
        unpaired_symptom_table(records, types, stage=stage, rounding=rounding)
        for stage in STAGES
        if (records["visit_stage"] == stage).any()
    ]
    return {
        "symptoms_unpaired": concat_panels(unpaired),
        "symptoms_paired": paired_symptom_table(records, types, before=before, after=after, rounding=rounding),
    }


def plot_sets(cfg: dict, records: pd.DataFrame) -> dict[str, pd.DataFrame]:
    metrics = (cfg.get("figures", {}) or {}).get("metrics") or DEFAULT_PLOT_METRICS
    out: dict[str, pd.DataFrame] = {}
    for family, frame in (("primary", records), ("sensitivity", sensitivity_subset(records))):
        for metric in metrics:
            out[f"{metric}_{family}"] = plot_records(frame, str(metric))
    return out


def build_tables(cfg: dict, records: pd.DataFrame) -> TableSet:
    rounding = RoundingPolicy.from_cfg(cfg)
    tables = antibody_tables(cfg, records, rounding)
    demo = demographics_table(cfg, records, rounding)
    if demo is not None:
        tables["demographics"] = demo
    if symptom_types_from_cfg(cfg) and ANY_SYMPTOM_COLUMN in records.columns:
        tables.update(symptom_tables(cfg, records, rounding))
    return TableSet(tables=tables, plots=plot_sets(cfg, records))


def write_tables(dirs: PipelineDirs, table_set: TableSet) -> list[Path]:
    written: list[Path] = []
    for name, df in table_set.tables.items():
        out_csv = dirs.tables_dir / f"{name}.csv"
        write_table(df, out_csv, dirs.tables_dir / f"{name}.md")
        written.append(out_csv)
    for name, df in table_set.plots.items():
        out_csv = dirs.plots_dir / f"{name}.csv"
        df.to_csv(out_csv, index=False)
        written.append(out_csv)
    logger.info("Wrote %d tables and %d plot sets", len(table_set.tables), len(table_set.plots))
    return written


def collect_output_tables(dirs: PipelineDirs) -> list[Path]:
    paths: list[Path] = []
    for d in (dirs.core_dir, dirs.audit_dir, dirs.tables_dir, dirs.plots_dir):
        paths.extend(p for p in sorted(d.rglob("*.csv")) if p.is_file())
    return paths


def write_manifests(dirs: PipelineDirs, config_path: Path) -> None:
    tables = collect_output_tables(dirs)
    build_table_manifest(tables, dirs.manifests_dir / "table_manifest.json")
    build_signature(
        out_path=dirs.manifests_dir / "build_signature.txt",
        config_paths=[config_path],
        table_paths=tables,
    )


def render_figures(cfg: dict, dirs: PipelineDirs) -> list[Path]:
    plots = sorted(dirs.plots_dir.glob("*.csv"))
    return render_plot_sets(plots, dirs.figures_dir)


def figures_enabled(cfg: dict) -> bool:
    return bool((cfg.get("figures", {}) or {}).get("enabled", False))


def run_pipeline(cfg: dict, config_path: Path) -> CohortBuild:
    """Build every artifact; nothing is written until all tables exist."""
    build = build_cohort(cfg)
    table_set = build_tables(cfg, build.records)

    dirs = ensure_pipeline_dirs(cfg)
    write_cohort_outputs(cfg, dirs, build)
    write_tables(dirs, table_set)
    if figures_enabled(cfg):
        render_figures(cfg, dirs)
    write_manifests(dirs, config_path)
    logger.info(
        "Pipeline complete: %d records, %d Baseline participants",
        len(build.records),
        int((build.records["visit_stage"] == BASELINE).sum()),
    )
    return build
