"""
Configuration Package for PiFleet

This package provides centralized configuration management for the fleet
controller. It includes path configurations shared by every component.
"""

from .paths import (
    CONFIG_DIR,
    DATA_DIR,
    JOB_LOG_DIR,
    ROOT_DIR,
    STATE_DB_PATH,
    TOKEN_CACHE_PATH,
    TOKEN_KEY_PATH,
)

__all__ = [
    "CONFIG_DIR",
    "DATA_DIR",
    "JOB_LOG_DIR",
    "ROOT_DIR",
    "STATE_DB_PATH",
    "TOKEN_CACHE_PATH",
    "TOKEN_KEY_PATH",
]
