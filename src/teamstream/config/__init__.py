"""Configuration models and parser for teamstream.yaml."""

from teamstream.config.models import (
    AgentSettings,
    PermissionMode,
    ResumeSettings,
    StoreSettings,
    TeamSettings,
    TeamstreamConfig,
    TimeoutSettings,
)
from teamstream.config.parser import ConfigError, load_config

__all__ = [
    "AgentSettings",
    "ConfigError",
    "PermissionMode",
    "ResumeSettings",
    "StoreSettings",
    "TeamSettings",
    "TeamstreamConfig",
    "TimeoutSettings",
    "load_config",
]
