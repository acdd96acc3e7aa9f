import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .accelerator import WORKGROUP_TILE, create_accelerator
from .pipeline import PipelineCache, PipelineDriver
from .preview import PREVIEW_RESOLUTION

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "accelerator": {
        "backend": "cuda",            # 'cuda' or 'host'
        "device_id": 0,
        "memory_limit_bytes": None,   # host backend only
        "rows_per_band": 1024,        # host backend only
        "show_progress": True,
    },
    "dispatch": {
        "tile": WORKGROUP_TILE,
    },
    "preview": {
        "resolution": PREVIEW_RESOLUTION,
    },
    "logging": {
        "log_dir": "logs",
        "log_name": "terrasketch",
    },
}


def _merge(base: Dict[str, Any], updates: Dict[str, Any], where: str = "") -> None:
    for key, value in updates.items():
        if not where and key not in base:
            raise ValueError(f"Unknown config section '{key}'. Must be one of {list(base)}")
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value, where=f"{where}{key}.")
        else:
            base[key] = value


def load_config(path: Optional[Union[str, Path]] = None,
                overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Dict[str, Any]]:
    """
    Builds the run configuration.

    Order: DEFAULT_CONFIG <- JSON file at path <- overrides.

    Args:
        path: Optional JSON file with any subset of the sections.
        overrides: Optional nested dict applied last (e.g. from CLI flags).
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found at: {path}")
        with open(path) as f:
            _merge(config, json.load(f))
        logger.info(f"Loaded config from {path}")
    if overrides:
        _merge(config, overrides)
    return config


def build_cache(config: Dict[str, Dict[str, Any]]) -> PipelineCache:
    """PipelineCache whose accelerator is created from config['accelerator'] on first use."""
    options = dict(config["accelerator"])
    backend = options.pop("backend")
    return PipelineCache(lambda: create_accelerator(backend, **options))


def build_driver(config: Dict[str, Dict[str, Any]]) -> PipelineDriver:
    return PipelineDriver(build_cache(config), tile=config["dispatch"]["tile"])
