"""Configuration loading for the walkthrough runner."""

from __future__ import annotations

import json

from pathlib import Path
from typing import Any


DEFAULT_CONFIG: dict[str, Any] = {
    "ctrl_path": "data/pbmc_alignment/PBMC_control.tsv",
    "stim_path": "data/pbmc_alignment/PBMC_interferon-stimulated.tsv",
    "cluster_labels_path": None,
    "output_dir": "results/pbmc_alignment",
    "var_thresh": 0.1,
    "k": 20,
    "lambda": 5.0,
    "max_iters": 30,
    "nrep": 1,
    "resolution": 0.4,
    "small_clust_thresh": 20,
    "knn_k": 20,
    "k2": 500,
    "embedding": "tsne",
    "rand_seed": 1,
}


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load a walkthrough config from a JSON file on top of ``DEFAULT_CONFIG``."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )

    unknown = set(data) - set(DEFAULT_CONFIG)
    if unknown:
        raise ValueError(
            f"Unknown config keys in '{config_path}': {', '.join(sorted(unknown))}."
        )

    return {**DEFAULT_CONFIG, **data}
