"""
PiFleet Main Application Entry Point

This module serves as the main entry point for the PiFleet runner fleet
controller. It handles:

- Configuration loading and validation
- Logging setup with optional colorization
- Environment detection (production vs development)
- Wiring of the coordinator client, credential store, health monitor,
  job executor and state store
- Fleet controller startup, the optional operator API and graceful shutdown

The application supports two modes:
1. Production: psutil host sensors, Docker sandbox, HTTP coordinator
2. Development: simulated sensors, in-process sandbox and coordinator

Usage:
    python src/main.py [--config-dir DIR] [--check]

Configuration:
    - fleet.yaml: Main application configuration
    - hosts.yaml: Hosts and the number of runner slots on each
    - environment.yaml: Environment-specific settings (production/development)
"""

import argparse
import logging
import logging.handlers
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import colorlog
import yaml

from config import CONFIG_DIR, JOB_LOG_DIR, STATE_DB_PATH
from config_validator import load_merged_config, validate_configuration_files
from coordinator import CoordinatorClient, HttpCoordinatorClient, SimulatedCoordinator
from credentials import CredentialStore
from executor import DockerSandbox, JobExecutor, LogStore, Sandbox, SimulatedSandbox
from fleet_interface import FleetAPIServer, ReportQueue, StateStore
from runners import FleetController, HealthMonitor

CONFIG_FILES = ("fleet.yaml", "hosts.yaml")
ENVIRONMENT_FILE = "environment.yaml"


def setup_logging(config: Dict[str, Any]) -> logging.Logger:
    """Configure logging with colorized output based on configuration."""
    # Get logging configuration with defaults
    logging_config = config.get("logging", {})
    log_level = getattr(logging, str(logging_config.get("level", "INFO")).upper())
    use_colors = logging_config.get("colorized", True)

    # Get color and format settings
    colors = logging_config.get(
        "colors",
        {
            "DEBUG": "blue",
            "INFO": "white",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "red,bg_white",
        },
    )

    format_config = logging_config.get("format", {})
    date_format = format_config.get("date_format", "%Y-%m-%d %H:%M:%S")
    color_format = format_config.get(
        "message_format",
        "%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    simple_format = format_config.get(
        "simple_format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Get the root logger and clear any existing handlers
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    if use_colors:
        # Create console handler with a colorized formatter
        console = colorlog.StreamHandler()
        console.setFormatter(
            colorlog.ColoredFormatter(
                color_format,
                datefmt=date_format,
                log_colors=colors,
                secondary_log_colors={},
                style="%",
            )
        )
    else:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(simple_format, datefmt=date_format))

    handlers: List[logging.Handler] = [console]

    # Optional rotating log file, always uncolored
    file_config = logging_config.get("file") or {}
    if file_config.get("enabled", False):
        log_path = Path(file_config["path"])
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=file_config.get("max_bytes", 5 * 1024 * 1024),
            backupCount=file_config.get("backup_count", 3),
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(simple_format, datefmt=date_format))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers)

    # Keep library chatter out of the fleet log
    for noisy in ("urllib3", "docker", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    return logging.getLogger(__name__)


def load_config(config_dir: Path = CONFIG_DIR) -> Dict[str, Any]:
    """
    Load configuration from fleet.yaml and hosts.yaml with validation.

    Returns:
        Validated configuration dictionary

    Raises:
        FileNotFoundError: If required config files are not found
        ValueError: If configuration is invalid
    """
    config_paths = [config_dir / name for name in CONFIG_FILES]
    env_path = config_dir / ENVIRONMENT_FILE

    # Validate configuration files first
    if not validate_configuration_files(config_paths, env_path):
        raise ValueError(
            "Configuration validation failed. Please check the logs for details."
        )

    try:
        return load_merged_config(config_paths)
    except FileNotFoundError as exc:
        raise FileNotFoundError(
            f"Required configuration files not found. Please ensure "
            f"{' and '.join(CONFIG_FILES)} exist in {config_dir}."
        ) from exc
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in configuration files: {e}") from e


def load_environment_config(logger: logging.Logger, config_dir: Path = CONFIG_DIR) -> bool:
    """Load environment configuration and return production flag."""
    env_config_path = config_dir / ENVIRONMENT_FILE
    try:
        with open(env_config_path, "r", encoding="utf-8") as f:
            env_config = yaml.safe_load(f) or {}
        production = env_config.get("production", False)
        logger.info(f"Environment: {'production' if production else 'development'}")
        return production
    except FileNotFoundError:
        logger.warning(
            f"{ENVIRONMENT_FILE} not found at {env_config_path}, defaulting to development mode"
        )
        return False
    except yaml.YAMLError as e:
        logger.warning(
            f"Invalid YAML in {ENVIRONMENT_FILE}: {e}. Defaulting to development mode"
        )
        return False


def build_coordinator(
    config: Dict[str, Any], production: bool, logger: logging.Logger
) -> CoordinatorClient:
    """Create the coordinator client for the current environment."""
    coordinator_config = config.get("coordinator", {})

    if production:
        url = coordinator_config.get("url")
        if not url:
            raise ValueError("coordinator.url is required in production")
        admin_env = coordinator_config.get("admin_token_env", "PIFLEET_ADMIN_TOKEN")
        logger.info(f"Using coordinator at {url}")
        return HttpCoordinatorClient(
            url,
            timeout=coordinator_config.get("request_timeout", 10.0),
            admin_token=os.environ.get(admin_env),
        )

    simulated_config = coordinator_config.get("simulated", {}) or {}
    coordinator = SimulatedCoordinator(
        lease_ttl=simulated_config.get("lease_ttl", 600.0),
        token_lifetime=simulated_config.get("token_lifetime", 3600.0),
    )

    # Seed demo jobs so a development fleet has something to run
    for job in simulated_config.get("jobs", []):
        command = job["command"]
        if isinstance(command, str):
            command = shlex.split(command)
        for _ in range(int(job.get("count", 1))):
            coordinator.submit_job(
                command,
                image=job.get("image"),
                env={str(k): str(v) for k, v in (job.get("env") or {}).items()},
                timeout=job.get("timeout"),
                labels=job.get("labels", []),
                capabilities=job.get("capabilities", []),
            )

    logger.info(f"Using simulated coordinator with {len(coordinator.pending_jobs())} queued jobs")
    return coordinator


def build_sandbox(config: Dict[str, Any], production: bool) -> Sandbox:
    """Create the job sandbox for the current environment."""
    if production:
        return DockerSandbox(config.get("executor", {}))
    return SimulatedSandbox()


def build_log_store(config: Dict[str, Any]) -> LogStore:
    log_config = config.get("executor", {}).get("logs", {}) or {}
    return LogStore(
        log_config.get("path", JOB_LOG_DIR),
        max_bytes=log_config.get("max_bytes", 10 * 1024 * 1024),
        backup_count=log_config.get("backup_count", 3),
        max_age=log_config.get("max_age", 7 * 24 * 3600),
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="PiFleet CI runner fleet controller")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=CONFIG_DIR,
        help="Directory holding fleet.yaml, hosts.yaml and environment.yaml",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate the configuration and exit",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point."""
    args = parse_args(argv)

    # Validation errors are logged before the configured handlers exist
    logging.basicConfig(level=logging.INFO)

    # Load configuration and setup logging
    try:
        config = load_config(args.config_dir)
    except (FileNotFoundError, ValueError) as e:
        logging.getLogger(__name__).critical(str(e))
        return 1

    logger = setup_logging(config)
    if args.check:
        logger.info("Configuration is valid")
        return 0

    # Determine environment
    production = load_environment_config(logger, args.config_dir)

    store = StateStore(STATE_DB_PATH)
    if not store.initialize():
        logger.critical("Failed to initialize state store. Exiting.")
        return 1

    coordinator: Optional[CoordinatorClient] = None
    sandbox: Optional[Sandbox] = None
    api_server: Optional[FleetAPIServer] = None
    controller: Optional[FleetController] = None

    try:
        coordinator = build_coordinator(config, production, logger)

        credential_store = CredentialStore(
            config.get("credentials", {}),
            production,
            token_provider=coordinator.fetch_registration_token,
        )
        if isinstance(coordinator, HttpCoordinatorClient):
            coordinator.token_source = credential_store.token_value

        health_monitor = HealthMonitor(config.get("health", {}), production)

        sandbox = build_sandbox(config, production)
        executor = JobExecutor(sandbox, build_log_store(config), config.get("executor", {}))
        report_queue = ReportQueue(store, config.get("report_retry_policy", {}))

        controller = FleetController(
            config,
            store,
            coordinator=coordinator,
            executor=executor,
            report_queue=report_queue,
            credential_store=credential_store,
            health_monitor=health_monitor,
            production=production,
        )

        # Start the operator API if enabled
        api_config = config.get("api", {}) or {}
        if api_config.get("enabled", False):
            api_server = FleetAPIServer(controller, api_config)
            if not api_server.start():
                logger.warning("Operator API failed to start, continuing without it")
                api_server = None

        logger.info("Starting PiFleet fleet controller...")
        controller.run()

    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
    except Exception as e:
        logger.error(f"Error in main application: {e}", exc_info=True)
        return 1
    finally:
        # Graceful shutdown
        logger.info("Initiating graceful shutdown...")
        if controller is not None:
            controller.shutdown()
        if api_server is not None:
            api_server.stop()
        if sandbox is not None:
            sandbox.close()
        if coordinator is not None:
            coordinator.close()
        store.close()
        logger.info("Application shutdown complete")

    return 0


if __name__ == "__main__":
    sys.exit(main())
