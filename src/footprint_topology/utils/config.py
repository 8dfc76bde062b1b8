"""
Configuration loading
YAML configuration files for the topology pipeline
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Union
import logging

logger = logging.getLogger(__name__)

CONFIG_SECTIONS = ('graph', 'matcher', 'merger', 'refiner', 'validator', 'pipeline')


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a pipeline configuration file

    Args:
        config_path: Path to a YAML file with optional sections
            graph, matcher, merger, refiner, validator, pipeline

    Returns:
        Dictionary keyed by section name (missing sections are empty)
    """
    config_path = Path(config_path)
    with open(config_path, 'r') as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Configuration root must be a mapping: {config_path}")

    unknown = set(raw) - set(CONFIG_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown configuration sections in {config_path}: {sorted(unknown)}")

    config = {section: dict(raw.get(section) or {}) for section in CONFIG_SECTIONS}
    logger.info(f"Loaded configuration from {config_path}")
    return config


def save_config(config: Dict[str, Any], config_path: Union[str, Path]):
    """Write a configuration dictionary as YAML"""
    config_path = Path(config_path)
    with open(config_path, 'w') as f:
        yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)
    logger.info(f"Configuration saved to {config_path}")
