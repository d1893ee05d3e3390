#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Per-species modelling pipeline and command line entry point.

Sub-commands:
  covariates  observations + rasters -> covariate table (+ summary JSON)
  species     observations + covariate table -> train/test tables,
              VIF resolution report
  validate    held-out predictions -> MAD table, Moran's I per model variant

Every species run starts from its own inputs; nothing is carried between runs.

Usage:
  python -m bird_sdm.integration.species_pipeline covariates --observations obs.csv
  python -m bird_sdm.integration.species_pipeline species --species woothr \
      --observations obs.csv --covariates outputs/covariates.parquet
  python -m bird_sdm.integration.species_pipeline validate --species woothr \
      --predictions preds.csv
"""
from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from bird_sdm.config import get_base, get_config, load_config, set_config
from bird_sdm.integration.covariates import build_covariate_table
from bird_sdm.integration.elevation import ELEVATION_COLUMNS
from bird_sdm.integration.landcover import pland_column
from bird_sdm.integration.observation_join import JoinResult, join_observations
from bird_sdm.logging_setup import setup_logging
from bird_sdm.model_validation.multicollinearity import (
    Chooser,
    MulticollinearityResolver,
    VifResolution,
)
from bird_sdm.model_validation.prediction_scoring import score_predictions, subset_sizes
from bird_sdm.model_validation.spatial_autocorrelation import spatial_autocorrelation_test
from bird_sdm.preprocessing.observations import RESPONSE, EffortFilter, prepare_observations
from bird_sdm.preprocessing.rasters import (
    discover_landcover_layers,
    load_landcover_layers,
    load_raster,
)

logger = logging.getLogger(__name__)

DETECTION_COVARIATES = ["day_of_year", "hours_of_day", "duration_minutes",
                        "effort_distance_km", "number_observers"]


def read_table(path: Path) -> pd.DataFrame:
    """Load parquet or CSV; a parquet that cannot be read falls back to a sibling CSV."""
    path = Path(path)
    if path.suffix == ".parquet":
        try:
            return pd.read_parquet(path)
        except (OSError, ImportError, ValueError) as e:
            csv_path = path.with_suffix(".csv")
            if csv_path.exists():
                logger.warning("Could not read %s (%s); loading %s", path.name, e, csv_path.name)
                return pd.read_csv(csv_path)
            raise
    return pd.read_csv(path)


def write_table(df: pd.DataFrame, path: Path) -> Path:
    """Write parquet when possible, CSV otherwise. Returns the path written."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == ".parquet":
        try:
            df.to_parquet(path, index=False)
            return path
        except (ImportError, ValueError) as e:
            path = path.with_suffix(".csv")
            logger.warning("Parquet write failed (%s); writing %s", e, path.name)
    df.to_csv(path, index=False)
    return path


def write_json(obj, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, default=_json_default)
    return path


def _json_default(o):
    if isinstance(o, (np.integer,)):
        return int(o)
    if isinstance(o, (np.floating,)):
        return None if np.isnan(o) else float(o)
    if isinstance(o, (set, tuple)):
        return sorted(o)
    if isinstance(o, pd.Series):
        return o.to_dict()
    return str(o)


def default_covariates(df: pd.DataFrame, classes: Sequence[int]) -> List[str]:
    """Land cover, elevation and effort columns present and non-constant in `df`."""
    candidates = [pland_column(c) for c in classes] + ELEVATION_COLUMNS + DETECTION_COVARIATES
    out = []
    for c in candidates:
        if c not in df.columns:
            continue
        col = pd.to_numeric(df[c], errors="coerce")
        if col.notna().sum() > 1 and col.nunique(dropna=True) > 1:
            out.append(c)
    return out


@dataclass
class SpeciesRun:
    species: str
    joined: JoinResult
    covariates: List[str]
    vif: Optional[VifResolution] = None
    extra: Dict = field(default_factory=dict)

    @property
    def train(self) -> pd.DataFrame:
        return self.joined.train

    @property
    def test(self) -> pd.DataFrame:
        return self.joined.test

    @property
    def retained(self) -> List[str]:
        return self.vif.retained if self.vif is not None else list(self.covariates)

    def summary(self) -> Dict:
        out = {
            "species": self.species,
            "join": self.joined.report.as_dict(),
            "covariates": self.covariates,
            "retained": self.retained,
        }
        if self.vif is not None:
            out["vif"] = self.vif.report()
        out.update(self.extra)
        return out


def run_species(species: str, observations: pd.DataFrame, covariates: pd.DataFrame,
                test_years: Optional[Iterable[int]] = None,
                model_covariates: Optional[Sequence[str]] = None,
                protected: Iterable[str] = (),
                vif_threshold: float = 5.0,
                group_corr: float = 0.5,
                chooser: Optional[Chooser] = None,
                classes: Sequence[int] = tuple(range(16)),
                effort: Optional[EffortFilter] = None,
                prepared: bool = False,
                strict: bool = False) -> SpeciesRun:
    """One species from raw checklists to a VIF-resolved training table."""
    logger.info("Species %s: %d checklists", species, len(observations))
    obs = observations if prepared else prepare_observations(observations, effort=effort)
    joined = join_observations(obs, covariates, test_years=test_years, strict=strict)
    if joined.train.empty:
        raise ValueError(f"{species}: no training rows after the year split")

    chosen = list(model_covariates) if model_covariates else default_covariates(joined.train, classes)
    protected = [p for p in protected if p in chosen]
    resolver = MulticollinearityResolver(joined.train, RESPONSE, chosen, threshold=vif_threshold,
                                         protected=protected, group_corr=group_corr)
    resolution = resolver.resolve(chooser=chooser)
    if not resolution.resolved:
        logger.warning("Species %s: max VIF still >= %.1f with only protected covariates left",
                       species, vif_threshold)
    logger.info("Species %s: %d covariates retained, dropped %s",
                species, len(resolution.retained), resolution.dropped)
    return SpeciesRun(species=species, joined=joined, covariates=chosen, vif=resolution)


def _prediction_arrays(predictions) -> Dict[str, np.ndarray]:
    if isinstance(predictions, pd.DataFrame):
        return {c: predictions[c].to_numpy(dtype=float) for c in predictions.columns}
    return {k: np.asarray(v, dtype=float) for k, v in predictions.items()}


def validate_species(run: SpeciesRun, predictions, residuals: Optional[Mapping[str, object]] = None,
                     permutations: int = 999, crs=None) -> Dict:
    """Score held-out predictions and test the residuals of each variant for autocorrelation.

    `predictions` maps variant name -> predicted counts aligned with `run.test`
    rows (a DataFrame with one column per variant works too). When `residuals`
    is not given, response residuals observed - predicted are used.
    """
    test = run.test
    observed = test[RESPONSE].to_numpy(dtype=float)
    preds = _prediction_arrays(predictions)
    mad = score_predictions(observed, preds)

    resid = _prediction_arrays(residuals) if residuals is not None else {
        k: observed - v for k, v in preds.items()}
    kwargs = {"permutations": permutations}
    if crs is not None:
        kwargs["crs"] = crs
    moran = {}
    for variant, r in resid.items():
        if len(r) != len(test):
            raise ValueError(f"{variant}: {len(r)} residuals for {len(test)} test rows")
        frame = pd.DataFrame({"latitude": test["latitude"].to_numpy(),
                              "longitude": test["longitude"].to_numpy(),
                              "residual": r})
        finite = r[np.isfinite(r)]
        if finite.size and np.ptp(finite) == 0:
            logger.warning("Species %s, %s: residuals are constant; autocorrelation test skipped",
                           run.species, variant)
            moran[variant] = None
            continue
        try:
            moran[variant] = spatial_autocorrelation_test(frame, **kwargs).as_dict()
        except ValueError as e:
            logger.warning("Species %s, %s: autocorrelation test skipped: %s", run.species, variant, e)
            moran[variant] = None
    return {"species": run.species, "mad": mad, "subset_sizes": subset_sizes(observed), "moran": moran}


def _effort_filter(cfg: Dict) -> Optional[EffortFilter]:
    limits = {k: v for k, v in cfg["effort"].items() if v is not None}
    return EffortFilter(**limits) if limits else None


def _species_dir(cfg: Dict, species: str) -> Path:
    return get_base() / cfg["outputs"]["directory"] / species


def cmd_covariates(args, cfg: Dict) -> Path:
    base = get_base()
    lc_cfg = cfg["landcover"]
    lc_dir = Path(args.landcover_dir) if args.landcover_dir else base / lc_cfg["directory"]
    el_path = Path(args.elevation) if args.elevation else base / cfg["elevation"]["path"]
    layers = load_landcover_layers(discover_landcover_layers(lc_dir, lc_cfg["pattern"]))
    elevation = load_raster(el_path, name="elevation")
    obs = prepare_observations(read_table(Path(args.observations)), effort=_effort_filter(cfg))
    result = build_covariate_table(obs, layers, elevation,
                                   classes=lc_cfg["classes"],
                                   reconstruct=lc_cfg["reconstruct_class"],
                                   extend_latest_year=lc_cfg["extend_latest_year"],
                                   crs=cfg["neighborhood"]["crs"],
                                   n_jobs=cfg["parallel"]["n_jobs"])
    out_dir = Path(args.out) if args.out else base / cfg["outputs"]["directory"]
    path = write_table(result.table, out_dir / "covariates.parquet")
    write_json(result.summary(), out_dir / "covariates_summary.json")
    logger.info("Covariates saved to %s", path)
    return path


def cmd_species(args, cfg: Dict) -> Path:
    vif_cfg = cfg["vif"]
    test_years = args.test_years or cfg["split"]["test_years"] or None
    run = run_species(args.species, read_table(Path(args.observations)), read_table(Path(args.covariates)),
                      test_years=test_years,
                      model_covariates=vif_cfg["covariates"],
                      protected=vif_cfg["protected"],
                      vif_threshold=vif_cfg["threshold"],
                      group_corr=vif_cfg["group_corr"],
                      classes=cfg["landcover"]["classes"],
                      effort=_effort_filter(cfg))
    out_dir = _species_dir(cfg, args.species)
    write_table(run.train, out_dir / "train.parquet")
    write_table(run.test, out_dir / "test.parquet")
    path = write_json(run.summary(), out_dir / "species_summary.json")
    logger.info("Species %s saved to %s", args.species, out_dir)
    return path


def cmd_validate(args, cfg: Dict) -> Path:
    out_dir = _species_dir(cfg, args.species)
    test = read_table(out_dir / "test.parquet")
    preds = read_table(Path(args.predictions))
    key = "checklist_id"
    if key in preds.columns and key in test.columns:
        preds = test[[key]].merge(preds, on=key, how="left", validate="one_to_one").drop(columns=key)
    elif len(preds) != len(test):
        raise ValueError(f"{len(preds)} prediction rows for {len(test)} test rows and no {key} to align on")
    preds = preds.select_dtypes(include="number")
    joined = JoinResult(train=test.iloc[0:0], test=test, report=None)
    run = SpeciesRun(species=args.species, joined=joined, covariates=[])
    acfg = cfg["autocorrelation"]
    res = validate_species(run, preds, permutations=acfg["permutations"], crs=acfg["crs"])
    write_table(res["mad"].reset_index(), out_dir / "mad.csv")
    path = write_json({"species": args.species,
                       "mad": res["mad"].to_dict(orient="index"),
                       "subset_sizes": res["subset_sizes"].to_dict(),
                       "moran": res["moran"]}, out_dir / "validation.json")
    print(res["mad"].to_string())
    return path


def main(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(description="Bird species distribution covariate and validation pipeline")
    parser.add_argument("--config", type=Path, default=None, help="YAML config (default: $BIRD_SDM_CONFIG or ./config.yaml)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    cv = sub.add_parser("covariates")
    cv.add_argument("--observations", required=True)
    cv.add_argument("--landcover-dir", default=None)
    cv.add_argument("--elevation", default=None)
    cv.add_argument("--out", default=None)

    sp = sub.add_parser("species")
    sp.add_argument("--species", required=True)
    sp.add_argument("--observations", required=True)
    sp.add_argument("--covariates", required=True)
    sp.add_argument("--test-years", type=int, nargs="*", default=None)

    va = sub.add_parser("validate")
    va.add_argument("--species", required=True)
    va.add_argument("--predictions", required=True)

    args = parser.parse_args(argv)
    if args.config is not None:
        set_config(load_config(args.config))
    cfg = get_config()
    setup_logging(cfg["log"]["level"], cfg["log"]["format"], cfg["log"]["file"])

    if args.cmd == "covariates":
        cmd_covariates(args, cfg)
    elif args.cmd == "species":
        cmd_species(args, cfg)
    elif args.cmd == "validate":
        cmd_validate(args, cfg)


if __name__ == "__main__":
    main()
