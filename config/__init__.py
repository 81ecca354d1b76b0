"""Configuration module for NepseWatch.

Centralized settings loaded with pydantic-settings from the environment.
"""

from config.settings import GlobalConfig, get_config

__all__ = ["GlobalConfig", "get_config"]
