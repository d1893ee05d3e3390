#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Global Moran's I on model residuals over a sphere-of-influence graph.

Steps:
  a. one row per distinct (latitude, longitude): median residual of the
     observations sharing it
  b. Delaunay triangulation of the distinct points (projected coordinates)
  c. sphere-of-influence pruning: edge (i, j) kept iff d(i, j) <= r_i + r_j,
     r_k = distance from k to its nearest neighbour
  d. Moran's I with binary weights (esda / libpysal)
  e. statistic + p-values

Descriptive only: nothing here alters the model.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Set, Tuple

import numpy as np
import pandas as pd
from esda.moran import Moran
from libpysal.weights import W
from pyproj import Transformer
from scipy import stats
from scipy.spatial import Delaunay, QhullError, cKDTree

from bird_sdm.config import SINUSOIDAL_CRS
from bird_sdm.errors import DuplicateCoordinateError
from bird_sdm.integration.neighborhoods import resolve_projection

logger = logging.getLogger(__name__)

Neighbors = Dict[int, Set[int]]


@dataclass
class AutocorrelationReport:
    statistic: float
    expected: float
    variance: float
    z_score: float
    p_value: float
    p_value_permutation: Optional[float]
    n_locations: int
    n_observations: int
    n_edges: int
    n_isolated: int

    def as_dict(self) -> Dict:
        return asdict(self)


def deduplicate_residuals(df: pd.DataFrame, residual: str = "residual",
                          lat: str = "latitude", lon: str = "longitude") -> pd.DataFrame:
    """Median residual per distinct coordinate pair, with the number of observations behind it."""
    clean = df[[lat, lon, residual]].dropna()
    out = (clean.groupby([lat, lon], sort=True)[residual]
           .agg(residual="median", n_obs="size")
           .reset_index()
           .rename(columns={"residual": residual}))
    return out


def check_unique_coordinates(coords: np.ndarray) -> None:
    uniq = np.unique(coords, axis=0)
    if len(uniq) != len(coords):
        raise DuplicateCoordinateError(
            f"{len(coords) - len(uniq)} repeated coordinates; deduplicate residuals before testing")


def project_coordinates(lat: np.ndarray, lon: np.ndarray, crs=SINUSOIDAL_CRS) -> np.ndarray:
    target = resolve_projection(crs)
    transformer = Transformer.from_crs("EPSG:4326", target, always_xy=True)
    x, y = transformer.transform(np.asarray(lon, dtype=float), np.asarray(lat, dtype=float))
    return np.column_stack([x, y])


def _collinear_chain(coords: np.ndarray) -> Neighbors:
    # degenerate triangulation: consecutive points along the line
    centred = coords - coords.mean(axis=0)
    _, _, vt = np.linalg.svd(centred, full_matrices=False)
    order = np.argsort(centred @ vt[0], kind="mergesort")
    nbrs: Neighbors = {i: set() for i in range(len(coords))}
    for a, b in zip(order[:-1], order[1:]):
        nbrs[int(a)].add(int(b))
        nbrs[int(b)].add(int(a))
    return nbrs


def delaunay_neighbors(coords: np.ndarray) -> Neighbors:
    n = len(coords)
    if n < 2:
        return {i: set() for i in range(n)}
    if n == 2:
        return {0: {1}, 1: {0}}
    try:
        tri = Delaunay(coords)
    except QhullError:
        logger.info("Points are collinear; using the chain graph as triangulation")
        return _collinear_chain(coords)
    indptr, indices = tri.vertex_neighbor_vertices
    return {i: set(int(j) for j in indices[indptr[i]:indptr[i + 1]]) for i in range(n)}


def sphere_of_influence(coords: np.ndarray, neighbors: Neighbors) -> Neighbors:
    """Keep Delaunay edges whose endpoints' nearest-neighbour circles intersect."""
    n = len(coords)
    if n < 2:
        return {i: set() for i in range(n)}
    dist, _ = cKDTree(coords).query(coords, k=2)
    radius = dist[:, 1]
    pruned: Neighbors = {i: set() for i in range(n)}
    for i, js in neighbors.items():
        for j in js:
            d = float(np.hypot(*(coords[i] - coords[j])))
            if d <= radius[i] + radius[j] + 1e-9 * max(d, 1.0):
                pruned[i].add(j)
                pruned[j].add(i)
    return pruned


def neighbor_graph(coords: np.ndarray) -> Neighbors:
    return sphere_of_influence(coords, delaunay_neighbors(coords))


def edge_count(neighbors: Neighbors) -> int:
    return sum(len(v) for v in neighbors.values()) // 2


def moran_test(values: np.ndarray, neighbors: Neighbors, permutations: int = 999,
               seed: Optional[int] = 42) -> Tuple[Moran, float]:
    """Moran's I with binary adjacency; returns (esda result, one-sided 'greater' p under randomisation)."""
    w = W({i: sorted(js) for i, js in neighbors.items()}, silence_warnings=True)
    state = np.random.get_state()
    if seed is not None:
        np.random.seed(seed)
    try:
        mi = Moran(np.asarray(values, dtype=float), w, transformation="B", permutations=permutations)
    finally:
        np.random.set_state(state)
    p_greater = float(stats.norm.sf(mi.z_rand))
    return mi, p_greater


def spatial_autocorrelation_test(df: pd.DataFrame, residual: str = "residual",
                                 lat: str = "latitude", lon: str = "longitude",
                                 crs=SINUSOIDAL_CRS, permutations: int = 999,
                                 deduplicate: bool = True) -> AutocorrelationReport:
    """Residuals with (possibly repeated) coordinates -> Moran's I report."""
    n_obs = int(df[[lat, lon, residual]].dropna().shape[0])
    points = deduplicate_residuals(df, residual, lat, lon) if deduplicate else df[[lat, lon, residual]].dropna()
    coords = project_coordinates(points[lat].to_numpy(), points[lon].to_numpy(), crs=crs)
    check_unique_coordinates(coords)
    if len(points) < 3:
        raise ValueError(f"Need at least 3 distinct locations for Moran's I, got {len(points)}")
    graph = neighbor_graph(coords)
    isolated = sum(1 for v in graph.values() if not v)
    mi, p_greater = moran_test(points[residual].to_numpy(), graph, permutations=permutations)
    report = AutocorrelationReport(
        statistic=float(mi.I),
        expected=float(mi.EI),
        variance=float(mi.VI_rand),
        z_score=float(mi.z_rand),
        p_value=p_greater,
        p_value_permutation=float(mi.p_sim) if permutations else None,
        n_locations=len(points),
        n_observations=n_obs,
        n_edges=edge_count(graph),
        n_isolated=isolated,
    )
    logger.info("Moran's I=%.4f (E=%.4f) p=%.4g over %d locations, %d edges",
                report.statistic, report.expected, report.p_value, report.n_locations, report.n_edges)
    return report
