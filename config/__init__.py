"""
Configuration package for DM Pilot.

Modules:
    settings: Centralized configuration using Pydantic Settings
    prompts: LLM system prompts and fixed reply lines
"""

from config.settings import Settings, SettingValidator, get_settings

__all__ = ["Settings", "SettingValidator", "get_settings"]
