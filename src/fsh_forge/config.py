"""
Forge Configuration

This module provides configuration management for fsh-forge projects.
Includes default configuration, file and environment-based settings, and validation.
"""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

CONFIG_FILE_NAMES = ("forge-config.yaml", "forge-config.yml", "forge-config.json")

VALID_STATUSES = ["draft", "active", "retired", "unknown"]


@dataclass
class ForgeConfig:
    """Main configuration class for a compilation"""

    # Project identity
    canonical: str = "http://example.org"
    id: Optional[str] = None
    name: Optional[str] = None
    version: Optional[str] = None
    status: str = "draft"
    publisher: Optional[str] = None
    fhir_version: str = "4.0.1"

    # Compilation
    strict_slice_ordering: bool = False
    definitions: List[str] = field(default_factory=list)
    input: List[str] = field(default_factory=list)
    output_dir: str = "output"

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_default_config() -> ForgeConfig:
    """Get default configuration"""
    return ForgeConfig()


def load_config_from_file(config_path: Union[str, Path]) -> ForgeConfig:
    """
    Load configuration from a JSON or YAML file

    Keys may be snake_case or camelCase (``fhirVersion``). Relative
    ``definitions``, ``input`` and ``output_dir`` entries are resolved
    against the file's directory.

    Args:
        config_path: Path to configuration file

    Returns:
        ForgeConfig instance

    Raises:
        FileNotFoundError: The file does not exist
        ValueError: Unsupported format or unknown keys
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        if config_path.suffix.lower() in [".yaml", ".yml"]:
            data = yaml.safe_load(f) or {}
        elif config_path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {config_path.suffix}")

    config = _config_from_dict(data)
    base_dir = config_path.parent
    config.definitions = [str(base_dir / d) for d in config.definitions]
    config.input = [str(base_dir / i) for i in config.input]
    config.output_dir = str(base_dir / config.output_dir)
    return config


def find_config_file(project_dir: Union[str, Path]) -> Optional[Path]:
    """Return the first forge-config file in a project directory"""
    for name in CONFIG_FILE_NAMES:
        candidate = Path(project_dir) / name
        if candidate.exists():
            return candidate
    return None


def load_config_from_env() -> ForgeConfig:
    """
    Load configuration from environment variables

    Environment variables are prefixed with FSH_FORGE_
    For example: FSH_FORGE_CANONICAL=http://hl7.org/fhir/us/example

    Returns:
        ForgeConfig instance
    """
    config = ForgeConfig()

    env_mappings = {
        "FSH_FORGE_CANONICAL": ("canonical", str),
        "FSH_FORGE_VERSION": ("version", str),
        "FSH_FORGE_STATUS": ("status", str),
        "FSH_FORGE_PUBLISHER": ("publisher", str),
        "FSH_FORGE_FHIR_VERSION": ("fhir_version", str),
        "FSH_FORGE_STRICT_SLICE_ORDERING": (
            "strict_slice_ordering",
            lambda x: x.lower() in ["true", "1", "yes"],
        ),
        "FSH_FORGE_DEFINITIONS": ("definitions", lambda x: x.split(os.pathsep)),
        "FSH_FORGE_OUTPUT_DIR": ("output_dir", str),
        "FSH_FORGE_LOG_LEVEL": ("log_level", str),
        "FSH_FORGE_LOG_FORMAT": ("log_format", str),
    }

    for env_var, (attr_name, converter) in env_mappings.items():
        value = os.getenv(env_var)
        if value is not None:
            try:
                setattr(config, attr_name, converter(value))
            except (ValueError, TypeError) as e:
                raise ValueError(f"Invalid value for {env_var}: {value}. Error: {e}")

    return config


def merge_configs(base_config: ForgeConfig, override_config: Dict[str, Any]) -> ForgeConfig:
    """
    Merge override values into a ForgeConfig instance

    Args:
        base_config: Base configuration
        override_config: Override values as dictionary

    Returns:
        Merged ForgeConfig instance
    """
    config_dict = _config_to_dict(base_config)
    config_dict.update(_normalize_keys(override_config))
    return _config_from_dict(config_dict)


def validate_config(config: ForgeConfig) -> List[str]:
    """
    Validate configuration and return list of issues

    Args:
        config: Configuration to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    issues = []

    if not config.canonical:
        issues.append("canonical is required")
    elif not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*:", config.canonical):
        issues.append(f"canonical must be an absolute URL: {config.canonical}")

    if config.status not in VALID_STATUSES:
        issues.append(f"Invalid status: {config.status}. Must be one of {VALID_STATUSES}")

    if not re.match(r"^\d+\.\d+\.\d+", config.fhir_version):
        issues.append(f"Invalid fhir_version: {config.fhir_version}")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level.upper() not in valid_log_levels:
        issues.append(
            f"Invalid log_level: {config.log_level}. Must be one of {valid_log_levels}"
        )

    return issues


def _config_to_dict(config: ForgeConfig) -> Dict[str, Any]:
    """Convert ForgeConfig to dictionary"""
    return {name: getattr(config, name) for name in config.__dataclass_fields__}


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_snake_case(k): v for k, v in data.items()}


def _config_from_dict(data: Dict[str, Any]) -> ForgeConfig:
    """Create ForgeConfig from dictionary"""
    data = _normalize_keys(data)
    unknown = sorted(k for k in data if k not in ForgeConfig.__dataclass_fields__)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
    for key in ("definitions", "input"):
        if isinstance(data.get(key), str):
            data[key] = [data[key]]
    if data.get("version") is not None:
        data["version"] = str(data["version"])
    return ForgeConfig(**data)
