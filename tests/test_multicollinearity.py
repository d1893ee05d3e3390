import numpy as np
import pandas as pd
import pytest

from bird_sdm.model_validation.multicollinearity import (
    MulticollinearityResolver,
    compute_vif_table,
    correlated_group,
    fit_quasi_poisson,
    resolve_multicollinearity,
)


@pytest.fixture
def counts_frame():
    rng = np.random.default_rng(11)
    n = 300
    forest = rng.normal(size=n)
    canopy = forest + rng.normal(scale=0.05, size=n)  # near copy of forest
    elev = rng.normal(size=n)
    effort = rng.normal(size=n)
    mu = np.exp(0.4 + 0.3 * forest - 0.2 * elev)
    return pd.DataFrame({
        "observation_count": rng.poisson(mu).astype(float),
        "forest": forest,
        "canopy": canopy,
        "elev": elev,
        "effort": effort,
    })


COVS = ["forest", "canopy", "elev", "effort"]


def test_vif_table_ranks_collinear_pair_first(counts_frame):
    vif = compute_vif_table(counts_frame[COVS])
    assert "const" not in vif.index
    assert set(vif.index[:2]) == {"forest", "canopy"}
    assert vif.iloc[0] > 5
    assert vif[["elev", "effort"]].max() < 2


def test_correlated_group(counts_frame):
    group = correlated_group(counts_frame[COVS], "forest")
    assert group == ["forest", "canopy"]


def test_quasi_poisson_estimates_dispersion(counts_frame):
    model = fit_quasi_poisson(counts_frame, "observation_count", COVS)
    assert model.scale == pytest.approx(1.0, abs=0.3)


def test_resolves_below_threshold(counts_frame):
    res = resolve_multicollinearity(counts_frame, "observation_count", COVS)
    assert res.resolved
    assert len(res.dropped) == 1
    assert res.dropped[0] in {"forest", "canopy"}
    assert res.final_vif.max() < 5
    assert res.steps[0].below_threshold


def test_protected_covariate_is_never_dropped(counts_frame):
    res = resolve_multicollinearity(counts_frame, "observation_count", COVS, protected=["canopy"])
    assert res.dropped == ["forest"]
    assert "canopy" in res.retained


def test_all_protected_stops_unresolved(counts_frame):
    res = resolve_multicollinearity(counts_frame, "observation_count", COVS, protected=["forest", "canopy"])
    assert not res.resolved
    assert res.dropped == []
    assert res.steps[-1].dropped is None


def test_chooser_decides(counts_frame):
    seen = []

    def pick_last(candidates, vif):
        seen.append(list(candidates))
        return candidates[-1]

    res = resolve_multicollinearity(counts_frame, "observation_count", COVS, chooser=pick_last)
    assert seen and set(seen[0]) == {"forest", "canopy"}
    assert res.dropped == [seen[0][-1]]


def test_chooser_outside_candidates_rejected(counts_frame):
    with pytest.raises(ValueError):
        resolve_multicollinearity(counts_frame, "observation_count", COVS, chooser=lambda c, v: "elev")


def test_try_drop_does_not_commit(counts_frame):
    resolver = MulticollinearityResolver(counts_frame, "observation_count", COVS)
    before = resolver.max_vif()
    after = resolver.try_drop("canopy")
    assert after < 5 < before
    assert resolver.current == COVS
    with pytest.raises(ValueError):
        MulticollinearityResolver(counts_frame, "observation_count", COVS, protected=["elev"]).drop("elev")


def test_unknown_protected_name_rejected(counts_frame):
    with pytest.raises(ValueError):
        MulticollinearityResolver(counts_frame, "observation_count", COVS, protected=["slope"])


def test_rows_with_missing_covariates_are_counted(counts_frame, caplog):
    frame = counts_frame.head(50).copy()
    frame.loc[frame.index[:10], "elev"] = np.nan
    with caplog.at_level("INFO"):
        res = resolve_multicollinearity(frame, "observation_count", COVS)
    report = res.report()
    assert report["n_rows"] == 40
    assert report["n_excluded"] == 10
    assert "excludes 10 of 50 rows" in caplog.text
