import json

import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin

from bird_sdm.config import SINUSOIDAL_CRS
from bird_sdm.integration import species_pipeline as sp


@pytest.fixture
def species_inputs():
    """40 localities on a 0.01 degree grid, one checklist per locality per year 2016-2018."""
    rng = np.random.default_rng(21)
    n = 40
    lat = (np.arange(n) // 8) * 0.01
    lon = (np.arange(n) % 8) * 0.01
    forest = rng.uniform(0, 0.9, size=n)
    rows, cov_rows = [], []
    for year in (2016, 2017, 2018):
        for i in range(n):
            rows.append({
                "checklist_id": f"S{year}_{i}",
                "locality_id": f"L{i:02d}",
                "latitude": lat[i],
                "longitude": lon[i],
                "observation_date": f"{year}-06-{1 + i % 28:02d}",
                "duration_minutes": 30 + i,
                "protocol_type": "Traveling",
                "effort_distance_km": 1.0,
                "observation_count": float(rng.poisson(1 + 3 * forest[i])),
            })
            cov_rows.append({
                "locality_id": f"L{i:02d}",
                "year": year,
                "PLAND_00": forest[i],
                "PLAND_01": 0.9 - forest[i] + rng.normal(scale=0.01),
                "elevation_mean": 100 + rng.normal(scale=20),
            })
    return pd.DataFrame(rows), pd.DataFrame(cov_rows)


def test_run_species_resolves_collinear_land_cover(species_inputs):
    obs, cov = species_inputs
    run = sp.run_species("woothr", obs, cov,
                         model_covariates=["PLAND_00", "PLAND_01", "elevation_mean"],
                         protected=["elevation_mean", "PLAND_00"])
    assert run.joined.report.test_years == [2018]
    assert len(run.train) == 80 and len(run.test) == 40
    assert run.vif.resolved
    assert run.retained == ["PLAND_00", "elevation_mean"]
    summary = run.summary()
    assert summary["species"] == "woothr"
    assert summary["vif"]["dropped"] == ["PLAND_01"]
    assert summary["vif"]["n_rows"] == 80
    assert summary["vif"]["n_excluded"] == 0


def test_runs_do_not_share_state(species_inputs):
    obs, cov = species_inputs
    a = sp.run_species("a", obs, cov, model_covariates=["PLAND_00", "PLAND_01"], protected=["PLAND_01"])
    b = sp.run_species("b", obs, cov, model_covariates=["PLAND_00", "PLAND_01"], protected=["PLAND_00"])
    assert a.retained == ["PLAND_01"]
    assert b.retained == ["PLAND_00"]
    assert a.joined is not b.joined


def test_validate_species_scores_each_variant(species_inputs):
    obs, cov = species_inputs
    run = sp.run_species("woothr", obs, cov, model_covariates=["PLAND_00", "elevation_mean"])
    observed = run.test["observation_count"].to_numpy()
    preds = {"mean": np.full(len(observed), run.train["observation_count"].mean()),
             "perfect": observed.copy()}
    res = sp.validate_species(run, preds, permutations=0)
    assert list(res["mad"].index) == ["mean", "perfect"]
    assert (res["mad"].loc["perfect"].fillna(0.0) == 0.0).all()
    assert res["moran"]["mean"]["n_locations"] == 40
    assert res["moran"]["perfect"] is None
    assert res["subset_sizes"]["all"] == 40


def test_default_covariates_skip_constant_columns(species_inputs):
    obs, cov = species_inputs
    run = sp.run_species("woothr", obs, cov)
    assert "effort_distance_km" not in run.covariates
    assert "PLAND_00" in run.covariates
    assert "duration_minutes" in run.covariates


def test_table_io_round_trip(tmp_path):
    df = pd.DataFrame({"locality_id": ["L1", "L2"], "PLAND_00": [0.1, 0.2]})
    written = sp.write_table(df, tmp_path / "t.parquet")
    pd.testing.assert_frame_equal(sp.read_table(written), df)
    csv = sp.write_table(df, tmp_path / "t.csv")
    pd.testing.assert_frame_equal(sp.read_table(csv), df)


def test_cli_species_and_validate(species_inputs, tmp_path, monkeypatch):
    obs, cov = species_inputs
    obs.to_csv(tmp_path / "obs.csv", index=False)
    cov.to_csv(tmp_path / "cov.csv", index=False)
    (tmp_path / "config.yaml").write_text(
        f"base_path: {tmp_path}\nvif:\n  covariates: [PLAND_00, PLAND_01]\nautocorrelation:\n  permutations: 0\n",
        encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    sp.main(["--config", str(tmp_path / "config.yaml"), "species", "--species", "woothr",
             "--observations", "obs.csv", "--covariates", "cov.csv"])
    out = tmp_path / "outputs" / "woothr"
    summary = json.loads((out / "species_summary.json").read_text(encoding="utf-8"))
    assert len(summary["retained"]) == 1

    test = sp.read_table(out / "test.parquet")
    pd.DataFrame({"checklist_id": test["checklist_id"][::-1],
                  "null": 1.0}).to_csv(tmp_path / "preds.csv", index=False)
    sp.main(["--config", str(tmp_path / "config.yaml"), "validate", "--species", "woothr",
             "--predictions", "preds.csv"])
    result = json.loads((out / "validation.json").read_text(encoding="utf-8"))
    assert set(result["mad"]) == {"null"}
    assert result["subset_sizes"]["all"] == 40


def _write_grid(path, arr):
    res = 463.3127165
    half = arr.shape[1] / 2 * res
    with rasterio.open(path, "w", driver="GTiff", height=arr.shape[0], width=arr.shape[1], count=1,
                       dtype=arr.dtype, crs=SINUSOIDAL_CRS, transform=from_origin(-half, half, res, res)) as dst:
        dst.write(arr, 1)


def test_cli_covariates_from_geotiffs(tmp_path):
    lc_dir = tmp_path / "landcover"
    lc_dir.mkdir()
    split = np.zeros((11, 11), dtype="uint8")
    split[:, 5:] = 1
    _write_grid(lc_dir / "landcover_2016.tif", split)
    _write_grid(lc_dir / "landcover_2017.tif", np.full((11, 11), 4, dtype="uint8"))
    _write_grid(tmp_path / "elevation.tif", np.tile(np.arange(11, dtype="float32") * 10, (11, 1)))

    rows = [("S1", "L1", 0.0, 0.0, "2016-05-01"), ("S2", "L1", 0.0, 0.0, "2017-05-01"),
            ("S3", "L2", 0.004, -0.004, "2016-06-01"), ("S4", "L1", 0.0, 0.0, "2018-05-01"),
            ("S5", "L9", 123.0, 0.0, "2016-05-01")]
    obs = pd.DataFrame(rows, columns=["checklist_id", "locality_id", "latitude", "longitude", "observation_date"])
    obs["duration_minutes"] = 30
    obs["protocol_type"] = "Stationary"
    obs["observation_count"] = 1
    obs.to_csv(tmp_path / "obs.csv", index=False)
    (tmp_path / "config.yaml").write_text(f"base_path: {tmp_path}\n", encoding="utf-8")

    out = tmp_path / "run"
    sp.main(["--config", str(tmp_path / "config.yaml"), "covariates",
             "--observations", str(tmp_path / "obs.csv"), "--landcover-dir", str(lc_dir),
             "--elevation", str(tmp_path / "elevation.tif"), "--out", str(out)])

    table = sp.read_table(out / "covariates.parquet").set_index(["locality_id", "year"])
    assert sorted(table.index) == [("L1", 2016), ("L1", 2017), ("L1", 2018), ("L2", 2016)]
    assert 0 < table.loc[("L1", 2016), "PLAND_00"] < 1
    assert table.loc[("L1", 2018), "PLAND_04"] == pytest.approx(1.0)
    assert table.loc[("L1", 2018), "landcover_year"] == 2017
    summary = json.loads((out / "covariates_summary.json").read_text(encoding="utf-8"))
    assert summary["rows"] == 4
    assert summary["radius"] == 1160.0
    assert summary["invalid_locations"] == 1
    assert summary["landcover"]["year_substitutions"] == {"2018": 2017}
    assert summary["merge"]["merged_rows"] == 4
