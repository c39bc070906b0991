import os
from dataclasses import fields
from typing import Any

import yaml

from .errors import InvalidParameterError
from .isolation.params import TrainingParams

# Path to the YAML configuration file
CONFIG_FILE_PATH = os.path.join(os.path.dirname(__file__), 'config.yaml')

DEFAULT_RUNTIME = {
    'n_jobs': 1,
    'quantile_method': 'linear',
    'log_level': 'INFO',
}


def load_config(config_path: str = CONFIG_FILE_PATH) -> dict:
    """Loads the configuration from a YAML file."""
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise InvalidParameterError(f"{config_path} does not contain a mapping")
    return config


def params_from_config(config: dict) -> TrainingParams:
    """Builds validated TrainingParams from the 'training' section; missing keys keep their defaults."""
    section = config.get('training') or {}
    known = {f.name for f in fields(TrainingParams)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise InvalidParameterError(f"unknown training parameters: {', '.join(unknown)}")
    return TrainingParams(**section)


def runtime_from_config(config: dict) -> dict[str, Any]:
    """Returns the 'runtime' section merged over DEFAULT_RUNTIME."""
    runtime = dict(DEFAULT_RUNTIME)
    runtime.update(config.get('runtime') or {})
    return runtime
