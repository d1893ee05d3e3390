#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""VIF-based multicollinearity resolution for the count models.

Decision support, one covariate at a time:
  - fit a quasi-Poisson GLM (Poisson family, Pearson chi2 scale)
  - rank covariates by VIF
  - take the worst covariate and its correlated group (|r| >= group_corr)
  - a chooser picks ONE member of the group to drop (protected covariates
    are never offered); refit and recompute
  - stop when max VIF < threshold, or when nothing droppable is left

The chooser is where the modeller's judgement goes. The default picks the
highest-VIF unprotected member of the group.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.stats.outliers_influence import variance_inflation_factor

logger = logging.getLogger(__name__)

VIF_THRESHOLD = 5.0

Chooser = Callable[[List[str], pd.Series], Optional[str]]


def compute_vif_table(X: pd.DataFrame) -> pd.Series:
    """VIF per covariate (intercept added for the computation, not reported), sorted descending."""
    if X.shape[1] == 0:
        return pd.Series(dtype="float64", name="vif")
    design = sm.add_constant(X.astype(float), has_constant="add")
    vals = design.to_numpy()
    out: Dict[str, float] = {}
    with np.errstate(divide="ignore", invalid="ignore"):
        for i, col in enumerate(design.columns):
            if col == "const":
                continue
            out[col] = float(variance_inflation_factor(vals, i))
    return pd.Series(out, name="vif").sort_values(ascending=False)


def fit_quasi_poisson(df: pd.DataFrame, response: str, covariates: Sequence[str]):
    """Quasi-Poisson GLM: Poisson mean/variance form, dispersion from Pearson chi2."""
    X = sm.add_constant(df[list(covariates)].astype(float), has_constant="add")
    y = df[response].astype(float)
    return sm.GLM(y, X, family=sm.families.Poisson()).fit(scale="X2")


def correlated_group(X: pd.DataFrame, target: str, group_corr: float = 0.5) -> List[str]:
    """`target` plus every covariate with |pearson r| >= group_corr against it."""
    corr = X.astype(float).corr()[target].abs().drop(labels=[target])
    members = corr[corr >= group_corr].sort_values(ascending=False).index.tolist()
    return [target] + members


def highest_vif_chooser(candidates: List[str], vif: pd.Series) -> Optional[str]:
    if not candidates:
        return None
    return max(candidates, key=lambda c: vif.get(c, -np.inf))


@dataclass
class VifStep:
    iteration: int
    max_covariate: str
    max_vif: float
    group: List[str]
    dropped: Optional[str]
    max_vif_after: Optional[float]
    below_threshold: bool
    dispersion: Optional[float] = None


@dataclass
class VifResolution:
    retained: List[str]
    dropped: List[str]
    steps: List[VifStep]
    initial_vif: pd.Series
    final_vif: pd.Series
    threshold: float
    resolved: bool
    n_rows: int = 0
    n_excluded: int = 0

    def report(self) -> Dict:
        return {
            "threshold": self.threshold,
            "resolved": self.resolved,
            "n_rows": self.n_rows,
            "n_excluded": self.n_excluded,
            "retained": self.retained,
            "dropped": self.dropped,
            "initial_vif": {k: round(float(v), 4) for k, v in self.initial_vif.items()},
            "final_vif": {k: round(float(v), 4) for k, v in self.final_vif.items()},
            "steps": [s.__dict__ for s in self.steps],
        }


@dataclass
class MulticollinearityResolver:
    data: pd.DataFrame
    response: str
    covariates: List[str]
    threshold: float = VIF_THRESHOLD
    protected: Iterable[str] = ()
    group_corr: float = 0.5
    fit_model: bool = True
    current: List[str] = field(init=False)
    dropped: List[str] = field(init=False, default_factory=list)
    model: Optional[object] = field(init=False, default=None)
    n_rows: int = field(init=False, default=0)
    n_excluded: int = field(init=False, default=0)

    def __post_init__(self):
        missing = [c for c in [self.response, *self.covariates] if c not in self.data.columns]
        if missing:
            raise ValueError(f"Columns not found: {missing}")
        unknown = set(self.protected) - set(self.covariates)
        if unknown:
            raise ValueError(f"Protected covariates not in the model: {sorted(unknown)}")
        self.protected = set(self.protected)
        before = len(self.data)
        self.data = self.data.dropna(subset=[self.response, *self.covariates])
        self.n_rows = len(self.data)
        self.n_excluded = before - self.n_rows
        if self.n_excluded:
            logger.info("VIF fit excludes %d of %d rows with missing response or covariates",
                        self.n_excluded, before)
        self.current = list(self.covariates)
        self._refit()

    def _refit(self) -> None:
        if not self.fit_model or not self.current:
            self.model = None
            return
        self.model = fit_quasi_poisson(self.data, self.response, self.current)

    @property
    def dispersion(self) -> Optional[float]:
        return float(self.model.scale) if self.model is not None else None

    def vif_report(self) -> pd.Series:
        """Ranked VIF list for the covariates still in the model."""
        return compute_vif_table(self.data[self.current])

    def max_vif(self) -> float:
        vif = self.vif_report()
        return float(vif.iloc[0]) if len(vif) else 0.0

    def candidates(self, vif: Optional[pd.Series] = None) -> List[str]:
        """Droppable members of the worst covariate's correlated group."""
        vif = self.vif_report() if vif is None else vif
        eligible = vif[vif >= self.threshold]
        if eligible.empty:
            return []
        group = correlated_group(self.data[self.current], eligible.index[0], self.group_corr)
        return [c for c in group if c not in self.protected]

    def try_drop(self, covariate: str) -> float:
        """Max VIF the model would have without `covariate` (nothing is committed)."""
        remaining = [c for c in self.current if c != covariate]
        vif = compute_vif_table(self.data[remaining])
        return float(vif.iloc[0]) if len(vif) else 0.0

    def drop(self, covariate: str) -> None:
        if covariate in self.protected:
            raise ValueError(f"{covariate} is protected")
        if covariate not in self.current:
            raise ValueError(f"{covariate} is not in the model")
        self.current.remove(covariate)
        self.dropped.append(covariate)
        self._refit()

    def resolve(self, chooser: Optional[Chooser] = None, max_iter: Optional[int] = None) -> VifResolution:
        chooser = chooser or highest_vif_chooser
        initial = self.vif_report()
        steps: List[VifStep] = []
        max_iter = max_iter if max_iter is not None else len(self.current)
        it = 0
        while it < max_iter:
            vif = self.vif_report()
            if vif.empty or float(vif.iloc[0]) < self.threshold:
                break
            it += 1
            worst = vif.index[0]
            group = correlated_group(self.data[self.current], worst, self.group_corr)
            options = [c for c in group if c not in self.protected]
            choice = chooser(options, vif) if options else None
            if choice is None:
                logger.warning("VIF %.2f for %s but no droppable covariate in its group %s",
                               float(vif.iloc[0]), worst, group)
                steps.append(VifStep(it, worst, float(vif.iloc[0]), group, None, None, False, self.dispersion))
                break
            if choice not in options:
                raise ValueError(f"Chooser picked {choice!r}, not one of {options}")
            self.drop(choice)
            after = self.max_vif()
            logger.info("VIF step %d: max %s=%.2f, dropped %s -> max VIF %.2f",
                        it, worst, float(vif.iloc[0]), choice, after)
            steps.append(VifStep(it, worst, float(vif.iloc[0]), group, choice, after,
                                 after < self.threshold, self.dispersion))

        final = self.vif_report()
        resolved = final.empty or float(final.iloc[0]) < self.threshold
        return VifResolution(retained=list(self.current), dropped=list(self.dropped), steps=steps,
                             initial_vif=initial, final_vif=final, threshold=self.threshold,
                             resolved=resolved, n_rows=self.n_rows, n_excluded=self.n_excluded)


def resolve_multicollinearity(data: pd.DataFrame, response: str, covariates: Sequence[str],
                              threshold: float = VIF_THRESHOLD, protected: Iterable[str] = (),
                              group_corr: float = 0.5, chooser: Optional[Chooser] = None) -> VifResolution:
    resolver = MulticollinearityResolver(data, response, list(covariates), threshold=threshold,
                                         protected=protected, group_corr=group_corr)
    return resolver.resolve(chooser=chooser)
