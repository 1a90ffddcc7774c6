# File: utils/config_utils.py
# Description: Utility functions for loading YAML configuration files,
# and the typed application settings built from config/settings.yaml.

import os  # Import OS for file handling and environment lookups
import logging
from functools import lru_cache
from pathlib import Path  # Import Path for OS-independent file paths
from typing import List, Optional

import yaml  # Import PyYAML for reading and parsing YAML files
from pydantic import BaseModel, Field, ValidationError

from utils.exceptions import ConfigLoaderError

logger = logging.getLogger(__name__)

SETTINGS_FILE_ENV = "CURTAIN_SETTINGS_FILE"
DEFAULT_SETTINGS_PATH = Path(__file__).resolve().parent.parent / "config" / "settings.yaml"

DEFAULT_COLOR_LIST = [
    "#fd7f6f", "#7eb0d5", "#b2e061", "#bd7ebe", "#ffb55a",
    "#ffee65", "#beb9db", "#fdcce5", "#8bd3c7",
]


def load_config(config_file_path: str, default_config: dict = None) -> dict:
    """
    Load the configuration from a YAML file.

    Args:
        config_file_path (str): Path to the YAML configuration file.
        default_config (dict, optional): Default configuration to use if loading fails.

    Returns:
        dict: Parsed configuration dictionary.

    Raises:
        ConfigLoaderError: If the configuration file does not exist or fails to parse.
    """
    # Step 1: Check if the YAML file exists at the specified path
    if not os.path.exists(config_file_path):
        if default_config is not None:
            logger.warning(f"Config file '{config_file_path}' not found. Using default configuration.")
            return default_config
        raise ConfigLoaderError(f"Config file '{config_file_path}' not found.")

    # Step 2: Attempt to load the YAML file
    try:
        with open(config_file_path, "r", encoding="utf-8") as config_file:
            config = yaml.safe_load(config_file)
    except yaml.YAMLError as e:
        if default_config is not None:
            logger.warning(f"Error parsing YAML file '{config_file_path}': {e}. Using default configuration.")
            return default_config
        raise ConfigLoaderError(f"Error parsing YAML file '{config_file_path}': {e}") from e

    # An empty YAML document parses to None
    return config if config is not None else (default_config or {})


class AppSettings(BaseModel):
    """Defaults shared by ingestion and search."""

    default_color_list: List[str] = Field(default_factory=lambda: list(DEFAULT_COLOR_LIST))
    p_cutoff: float = 0.05
    log2fc_cutoff: float = 0.6
    default_comparison: str = "1"
    insert_batch_size: int = 5000


@lru_cache(maxsize=None)
def get_app_settings(settings_path: Optional[str] = None) -> AppSettings:
    """
    Loads the application settings.

    The path is taken from the argument, then CURTAIN_SETTINGS_FILE, then
    config/settings.yaml. A missing file yields the built-in defaults.

    Raises:
        ConfigLoaderError: If the file exists but its values are invalid.
    """
    path = settings_path or os.getenv(SETTINGS_FILE_ENV) or str(DEFAULT_SETTINGS_PATH)
    raw = load_config(path, default_config={})
    if not isinstance(raw, dict):
        raise ConfigLoaderError(f"Settings file '{path}' must contain a mapping.")
    try:
        return AppSettings(**raw)
    except ValidationError as e:
        raise ConfigLoaderError(f"Invalid settings in '{path}': {e}") from e
