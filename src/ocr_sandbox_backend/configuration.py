from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from omegaconf import DictConfig, OmegaConf

from .errors import ConfigurationError
from .models import ConfigMetadata, SandboxState, StepKind

_HERE = Path(__file__).resolve()
CONFIG_PATH = _HERE.parent / "config/config.yaml"

# Optional YAML file merged over the packaged defaults.
CONFIG_ENV_VARIABLE = "OCR_SANDBOX_CONFIG"

TRACK_PLACEHOLDER = "{track}"

NOTES = {
    "mets.template": "File group id pattern; {group} is the METS group, {track} the track joined by '_' ('root' for the root).",
    "mets.group": "Selects the page naming convention used to map METS pages to folios.",
    "scheduler.database": "Set to null to keep job records in memory only.",
    "sandbox.staging.folder": "Jobs write their output here before it is attached to the tree.",
}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    config = OmegaConf.load(CONFIG_PATH)
    local_path = os.environ.get(CONFIG_ENV_VARIABLE)
    if local_path:
        config = OmegaConf.merge(config, OmegaConf.load(local_path))
    return config  # type: ignore[return-value]


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def build_config_metadata() -> ConfigMetadata:
    return ConfigMetadata(
        defaults=get_default_config_container(resolve=False),
        step_kinds=[kind.value for kind in StepKind],
        sandbox_states=[state.value for state in SandboxState],
        notes=NOTES,
    )


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Merge overrides into the defaults and validate the result.

    The defaults are struct-locked, so unknown keys in ``overrides`` are
    rejected instead of silently ignored.

    Raises:
        ConfigurationError: If an override is unknown or the METS template
            cannot produce distinct file group ids.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    try:
        merged = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides or {})))
    except Exception as exc:  # omegaconf raises several unrelated error types here
        raise ConfigurationError(f"Invalid configuration override: {exc}") from exc

    template = merged.mets.template
    if not isinstance(template, str) or TRACK_PLACEHOLDER not in template:
        raise ConfigurationError(f"mets.template must contain {TRACK_PLACEHOLDER}, got {template!r}")
    return merged
