"""Session configuration: document models, loading and process settings."""

from podlink.config.loader import load_config, load_config_text, parse_config
from podlink.config.models import (
    DEFAULT_PLUGIN_CONTAINER_NAME,
    Config,
    ConnectionConfig,
    Container,
    PluginContainer,
    PodConfig,
    PodMetadata,
    PodSpecConfig,
    Timeouts,
    Volume,
    parse_duration,
)
from podlink.config.settings import PodlinkSettings, get_settings

__all__ = [
    "DEFAULT_PLUGIN_CONTAINER_NAME",
    "Config",
    "ConnectionConfig",
    "Container",
    "PluginContainer",
    "PodConfig",
    "PodMetadata",
    "PodSpecConfig",
    "PodlinkSettings",
    "Timeouts",
    "Volume",
    "get_settings",
    "load_config",
    "load_config_text",
    "parse_config",
    "parse_duration",
]
