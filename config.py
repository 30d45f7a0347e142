"""
This module defines the data structures for our configuration.
AWSResource is what every builder finalizes into; Config and
ResourceDeclaration mirror the layout of config.yaml.
"""

import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

REQUIRED_KEYS = ["team", "service", "environment", "region"]


@dataclass
class AWSResource:
    name: str
    type: str
    args: Dict
    custom_name: Optional[str] = None


@dataclass
class ResourceDeclaration:
    name: str
    builder: str
    values: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Config:
    team: str
    service: str
    environment: str
    region: str
    tags: Dict[str, str] = field(default_factory=dict)
    resources: List[ResourceDeclaration] = field(default_factory=list)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> "Config":
        missing = [key for key in REQUIRED_KEYS if not config_data.get(key)]
        if missing:
            raise ValueError(f"Missing required configuration key: {missing[0]}")
        declarations = []
        for entry in config_data.get("resources") or []:
            if "name" not in entry or "builder" not in entry:
                raise ValueError(f"Resource declarations need 'name' and 'builder': {entry}")
            declarations.append(
                ResourceDeclaration(entry["name"], entry["builder"], dict(entry.get("values") or {}))
            )
        return cls(
            team=config_data["team"],
            service=config_data["service"],
            environment=config_data["environment"],
            region=config_data["region"],
            tags=dict(config_data.get("tags") or {}),
            resources=declarations,
        )


def load_config(file_path: str) -> Config:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file) or {}
    if not isinstance(config_data, dict):
        raise ValueError(f"Configuration file '{file_path}' must contain a mapping")
    return Config.from_dict(config_data)
