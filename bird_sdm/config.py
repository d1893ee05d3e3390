"""Configuration loader for the covariate and validation pipeline.
Reads config.yaml if present else falls back to defaults.
"""
from __future__ import annotations
import os
import yaml
from pathlib import Path
from typing import Any, Dict

# MODIS MCD12Q1 grid (sinusoidal, authalic sphere)
SINUSOIDAL_CRS = "+proj=sinu +lon_0=0 +x_0=0 +y_0=0 +R=6371007.181 +units=m +no_defs"

CONFIG_ENV = "BIRD_SDM_CONFIG"

DEFAULTS: Dict[str, Any] = {
    "base_path": ".",
    "log": {
        "level": "INFO",
        "format": None,
        "file": None,
    },
    "neighborhood": {
        "crs": SINUSOIDAL_CRS,
    },
    "landcover": {
        "directory": "landcover",
        "pattern": "*.tif",
        "classes": list(range(16)),
        # class whose layer is unreliable; rebuilt as 1 - sum(others)
        "reconstruct_class": None,
        # reuse the latest raster for observation years past the data
        "extend_latest_year": True,
    },
    "effort": {
        "max_duration_minutes": None,
        "max_distance_km": None,
        "max_observers": None,
    },
    "elevation": {
        "path": "elevation/elevation.tif",
    },
    "split": {
        "test_years": [],
    },
    "vif": {
        "threshold": 5.0,
        "protected": [],
        "group_corr": 0.5,
        # None: every non-constant land cover, elevation and effort column
        "covariates": None,
    },
    "autocorrelation": {
        "permutations": 999,
        "crs": SINUSOIDAL_CRS,
    },
    "parallel": {
        "n_jobs": 1,
    },
    "outputs": {
        "directory": "outputs",
    },
}


def _merge(defaults: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    # sections are merged one level deep, scalars replaced
    merged = {**defaults}
    for key, value in data.items():
        if isinstance(value, dict) and isinstance(defaults.get(key), dict):
            merged[key] = {**defaults[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(conf_path: Path | None = None) -> Dict[str, Any]:
    if conf_path is None and os.environ.get(CONFIG_ENV):
        conf_path = Path(os.environ[CONFIG_ENV])
    conf_path = conf_path or Path(DEFAULTS["base_path"]) / "config.yaml"
    if conf_path.exists():
        with open(conf_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Expected YAML mapping at {conf_path}")
    else:
        data = {}
    return _merge(DEFAULTS, data)

# Convenience accessors
_cfg_cache: Dict[str, Any] | None = None

def get_config() -> Dict[str, Any]:
    global _cfg_cache
    if _cfg_cache is None:
        _cfg_cache = load_config()
    return _cfg_cache

def reset_config() -> None:
    global _cfg_cache
    _cfg_cache = None

def get_base() -> Path:
    base = Path(get_config()["base_path"]).resolve()
    if not base.exists():
        # Fallback to current working directory when the configured path is not present
        return Path.cwd().resolve()
    return base

def set_config(cfg: Dict[str, Any]) -> None:
    global _cfg_cache
    _cfg_cache = cfg
