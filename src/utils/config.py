"""
Configuration Management
Load and validate training configuration files
"""

import logging
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Dict, Any, List, Optional

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

BACKENDS = ("cpu", "parallel")
UPDATE_PHASES = ("single", "two_phase")
UPDATE_COMBINES = ("replace", "accumulate")
WEIGHT_LAYOUTS = ("transposed", "channel_major")


@dataclass
class TrainConfig:
    """Configuration container for one training run."""
    # Automaton
    hidden_channels: int = 2
    max_steps: int = 40
    update_phases: str = "two_phase"
    update_combine: str = "accumulate"
    # Optimizer
    population_size: int = 100
    mu: Optional[int] = None
    subset_size: int = 64
    covariance_retention: float = 0.5
    initial_sigma: float = 0.2
    max_evaluations: int = 20_000
    mirrored_sampling: bool = False
    # Loss
    l1_coeff: float = 1e-4
    l2_coeff: float = 1e-4
    # Models per task and test-time prediction
    num_models: int = 4
    num_attempts: int = 2
    max_color_permutations: int = 1000
    # Execution
    backend: str = "cpu"
    devices: List[str] = field(default_factory=lambda: ["cpu"])
    weight_layout: str = "transposed"
    seed: int = 42


def config_to_dict(config: TrainConfig) -> Dict[str, Any]:
    """Plain dictionary view of a configuration."""
    return asdict(config)


def config_from_dict(data: Dict[str, Any]) -> TrainConfig:
    """
    Build a validated configuration from a dictionary.

    Args:
        data: Mapping of field names to values

    Returns:
        Validated TrainConfig
    """
    known = {f.name for f in fields(TrainConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {unknown}")

    config = TrainConfig(**data)
    validate_config(config)
    return config


def load_config(config_path: str) -> TrainConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Validated configuration
    """
    config_file = Path(config_path)

    if not config_file.exists():
        # Create default config if it doesn't exist
        create_default_config(config_path)

    with open(config_file, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")

    return config_from_dict(data)


def save_config(config: TrainConfig, config_path: str):
    """Write a configuration to YAML."""
    config_file = Path(config_path)
    config_file.parent.mkdir(parents=True, exist_ok=True)

    with open(config_file, 'w') as f:
        yaml.dump(config_to_dict(config), f, default_flow_style=False, indent=2)


def create_default_config(config_path: str):
    """
    Create default configuration file.

    Args:
        config_path: Path where to create config file
    """
    save_config(TrainConfig(), config_path)
    logger.info(f"Created default configuration at {config_path}")


def validate_config(config: TrainConfig) -> bool:
    """
    Validate configuration parameters.

    Args:
        config: Configuration to check

    Returns:
        True if configuration is valid

    Raises:
        ConfigurationError: naming the first invalid key
    """
    if config.hidden_channels < 0:
        raise ConfigurationError("hidden_channels must be >= 0")
    if config.max_steps < 0:
        raise ConfigurationError("max_steps must be >= 0")
    if config.update_phases not in UPDATE_PHASES:
        raise ConfigurationError(f"update_phases must be one of {UPDATE_PHASES}")
    if config.update_combine not in UPDATE_COMBINES:
        raise ConfigurationError(f"update_combine must be one of {UPDATE_COMBINES}")

    if config.population_size < 2:
        raise ConfigurationError("population_size must be >= 2")
    if config.mu is not None and not 1 <= config.mu < config.population_size:
        raise ConfigurationError("mu must satisfy 1 <= mu < population_size")
    if config.mirrored_sampling and config.population_size % 2:
        raise ConfigurationError("population_size must be even with mirrored_sampling")
    if config.subset_size < 1:
        raise ConfigurationError("subset_size must be >= 1")
    if not 0.0 <= config.covariance_retention <= 1.0:
        raise ConfigurationError("covariance_retention must lie in [0, 1]")
    if not config.initial_sigma > 0:
        raise ConfigurationError("initial_sigma must be > 0")
    if config.max_evaluations < config.population_size:
        raise ConfigurationError("max_evaluations must allow at least one generation")

    if config.l1_coeff < 0 or config.l2_coeff < 0:
        raise ConfigurationError("l1_coeff and l2_coeff must be >= 0")

    if config.num_models < 1:
        raise ConfigurationError("num_models must be >= 1")
    if config.num_attempts < 1:
        raise ConfigurationError("num_attempts must be >= 1")
    if config.max_color_permutations < 0:
        raise ConfigurationError("max_color_permutations must be >= 0")

    if config.backend not in BACKENDS:
        raise ConfigurationError(f"backend must be one of {BACKENDS}")
    if not isinstance(config.devices, (list, tuple)) or not all(isinstance(d, str) for d in config.devices):
        raise ConfigurationError(f"devices must be a list of device names, got {config.devices!r}")
    if not config.devices:
        raise ConfigurationError("devices must name at least one device")
    if config.weight_layout not in WEIGHT_LAYOUTS:
        raise ConfigurationError(f"weight_layout must be one of {WEIGHT_LAYOUTS}")

    return True


# Budget caps of the reduced run modes
MODE_LIMITS = {
    'quick': {'population_size': 20, 'max_evaluations': 2000, 'max_steps': 20, 'num_models': 2},
    'debug': {'population_size': 8, 'max_evaluations': 80, 'max_steps': 5, 'num_models': 1},
}


def apply_mode(config: TrainConfig, mode: str) -> TrainConfig:
    """
    Shrink the search budget for quick or debug runs.

    A configured mu is capped at half the reduced population, and the result
    is validated again.

    Args:
        config: Configuration to shrink in place
        mode: 'full', 'quick' or 'debug'

    Returns:
        The same configuration object
    """
    if mode == 'full':
        return config
    if mode not in MODE_LIMITS:
        raise ConfigurationError(f"mode must be one of {['full'] + sorted(MODE_LIMITS)}")

    for key, limit in MODE_LIMITS[mode].items():
        setattr(config, key, min(getattr(config, key), limit))
    if config.mu is not None:
        config.mu = min(config.mu, config.population_size // 2)

    validate_config(config)
    return config
