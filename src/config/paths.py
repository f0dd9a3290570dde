"""
Path Configuration for PiFleet

This module provides centralized path configuration for the fleet controller.
Everything the controller persists locally lives under DATA_DIR.
"""

from pathlib import Path

# Get the root directory of the project (parent of src directory)
ROOT_DIR = Path(__file__).parent.parent.parent

# YAML configuration files
CONFIG_DIR = ROOT_DIR / "configuration"

# Persisted local state: token cache, state database, job logs
DATA_DIR = ROOT_DIR / "data"

# Rotated job log chunks
JOB_LOG_DIR = DATA_DIR / "job_logs"

# Agent state, identities and the pending report queue
STATE_DB_PATH = DATA_DIR / "fleet_state.db"

# Encrypted registration token cache and its key
TOKEN_CACHE_PATH = DATA_DIR / "token.cache"
TOKEN_KEY_PATH = DATA_DIR / "token.key"
