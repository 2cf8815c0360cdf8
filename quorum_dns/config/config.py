"""
Configuration module for Quorum-DNS.
"""

import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from quorum_dns.controller.reconciler import DELEGATION_ROLES, ReconcileTiming
from quorum_dns.errors import InvalidGroupError
from quorum_dns.models.group import validate_group

DEFAULT_DURATION = 60


def parse_duration(duration: Union[str, int, float, None], default: int = DEFAULT_DURATION) -> int:
    """
    Parse a duration string like '15m' into seconds.

    Plain numbers are taken as seconds.

    Args:
        duration: Duration string or number of seconds
        default: Value used when the duration is empty or malformed

    Returns:
        int: Duration in seconds
    """
    if duration is None or duration == "":
        return default
    if isinstance(duration, (int, float)):
        return int(duration)

    # Pattern for duration string (e.g., 15m, 1h, 30s)
    match = re.match(r"^(\d+)([smhd])?$", duration.strip())
    if not match:
        return default

    value, unit = match.groups()
    value = int(value)

    if unit in (None, "s"):
        return value
    elif unit == "m":
        return value * 60
    elif unit == "h":
        return value * 60 * 60
    elif unit == "d":
        return value * 60 * 60 * 24

    return default


class Config(BaseModel):
    """Configuration for Quorum-DNS."""

    # Provider configuration
    provider: str = "inmemory"
    zones: List[str] = Field(default_factory=list)

    # Registry configuration
    txt_prefix: str = "kuadrant-"
    txt_wildcard_replacement: str = "wildcard"
    encrypt_txt: bool = False
    encryption_key: Optional[str] = None

    # Controller configuration
    cluster_id: str = "local"
    workers: int = 1
    max_requeue: Union[str, int] = "15m"
    valid_for: Union[str, int] = "14m"
    min_requeue: Union[str, int] = "5s"
    validation_variance: float = 0.5
    inactive_group_requeue: Union[str, int] = "15s"
    records_file: Optional[str] = None
    health_checks_file: Optional[str] = None
    delegation_role: str = "primary"
    remote_clusters: Dict[str, str] = Field(default_factory=dict)

    # Group configuration
    group: str = ""
    nameservers: List[str] = Field(default_factory=list)

    # Logging configuration
    log_level: str = "info"

    # Health server configuration
    health_host: str = "0.0.0.0"
    health_port: int = 8080

    @field_validator("group")
    @classmethod
    def _check_group(cls, value: str) -> str:
        try:
            return validate_group(value)
        except InvalidGroupError as e:
            raise ValueError(str(e)) from e

    @field_validator("delegation_role")
    @classmethod
    def _check_delegation_role(cls, value: str) -> str:
        if value not in DELEGATION_ROLES:
            raise ValueError(f"delegation role must be one of {DELEGATION_ROLES}")
        return value

    @field_validator("validation_variance")
    @classmethod
    def _check_variance(cls, value: float) -> float:
        if not 0 <= value < 1:
            raise ValueError("validation variance must be between 0 and 1")
        return value

    @classmethod
    def from_yaml(cls, config_path: Optional[Union[str, Path]] = None) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Config: Config instance populated with values from the YAML file
        """
        # Default configuration paths to check
        default_paths = [
            Path("./quorum-dns.yaml"),
            Path("./quorum-dns.yml"),
            Path("/etc/quorum-dns/quorum-dns.yaml"),
            Path("/etc/quorum-dns/config.yaml"),
        ]

        if config_path:
            paths = [Path(config_path)]
        else:
            paths = default_paths

        # Try to load configuration from the first existing path
        config_data = {}
        for path in paths:
            if path.exists():
                with open(path, "r") as f:
                    yaml_content = cls._substitute_env_vars(f.read())
                    config_data = yaml.safe_load(yaml_content) or {}
                break

        return cls(**cls._flatten_config(config_data))

    @staticmethod
    def _substitute_env_vars(content: str) -> str:
        """
        Substitute environment variables in the configuration content.

        Args:
            content: Configuration content

        Returns:
            str: Configuration content with environment variables substituted
        """
        # Pattern for ${ENV_VAR} or ${ENV_VAR:-default}
        pattern = r"\${([^}]+)}"

        def replace_env_var(match):
            env_var = match.group(1)
            if ":-" in env_var:
                env_var, default = env_var.split(":-", 1)
                return os.environ.get(env_var, default)
            return os.environ.get(env_var, "")

        return re.sub(pattern, replace_env_var, content)

    @staticmethod
    def _flatten_config(config_data: dict) -> dict:
        """
        Flatten nested configuration.

        Keys missing from the file are left out so the model defaults apply.

        Args:
            config_data: Nested configuration data

        Returns:
            dict: Flattened configuration data
        """
        flat_config = {}

        def copy(section: dict, key: str, target: Optional[str] = None) -> None:
            if section.get(key) is not None:
                flat_config[target or key] = section[key]

        provider = config_data.get("provider") or {}
        copy(provider, "name", "provider")
        copy(provider, "zones")

        registry = config_data.get("registry") or {}
        copy(registry, "txt_prefix")
        copy(registry, "txt_wildcard_replacement")
        copy(registry, "encrypt", "encrypt_txt")
        copy(registry, "encryption_key")

        controller = config_data.get("controller") or {}
        for key in (
            "cluster_id",
            "workers",
            "max_requeue",
            "valid_for",
            "min_requeue",
            "validation_variance",
            "inactive_group_requeue",
            "records_file",
            "health_checks_file",
            "delegation_role",
            "remote_clusters",
        ):
            copy(controller, key)

        groups = config_data.get("groups") or {}
        copy(groups, "group")
        copy(groups, "nameservers")

        logging = config_data.get("logging") or {}
        copy(logging, "level", "log_level")

        health = config_data.get("health") or {}
        copy(health, "host", "health_host")
        copy(health, "port", "health_port")

        return flat_config

    def to_timing(self) -> ReconcileTiming:
        """
        Convert the timing settings into seconds.

        Returns:
            ReconcileTiming: Requeue intervals for the reconcilers
        """
        return ReconcileTiming(
            max_requeue=float(parse_duration(self.max_requeue, 900)),
            valid_for=float(parse_duration(self.valid_for, 840)),
            min_requeue=float(parse_duration(self.min_requeue, 5)),
            validation_variance=self.validation_variance,
            inactive_group_requeue=float(parse_duration(self.inactive_group_requeue, 15)),
        )
