"""
Configuration Validation for PiFleet

This module provides validation and schema checking for configuration files
to ensure all required settings are present and have valid values before the
fleet controller starts any agent.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


class LogLevel(str, Enum):
    """Valid log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class OfflineJobPolicy(str, Enum):
    """What an agent does with its running job when health turns critical."""

    FINISH = "finish"
    CANCEL = "cancel"


@dataclass
class ValidationError:
    """Represents a validation error with context."""

    path: str  # Dot-separated path to the invalid field
    message: str
    value: Any = None
    expected: Any = None

    def __str__(self) -> str:
        msg = f"{self.path}: {self.message}"
        if self.value is not None:
            msg += f" (got: {self.value})"
        if self.expected is not None:
            msg += f" (expected: {self.expected})"
        return msg


class ConfigValidator:
    """Validates configuration dictionaries against expected schemas."""

    def __init__(self):
        """Initialize the configuration validator."""
        self.logger = logging.getLogger(__name__)
        self.errors: List[ValidationError] = []
        self.warnings: List[ValidationError] = []

    def validate_config(
        self, config: Dict[str, Any]
    ) -> Tuple[bool, List[ValidationError], List[ValidationError]]:
        """
        Validate the main configuration file.

        Args:
            config: Configuration dictionary to validate

        Returns:
            Tuple of (is_valid, errors, warnings)
        """
        self.errors = []
        self.warnings = []

        if not isinstance(config, dict):
            self.errors.append(
                ValidationError(
                    "config",
                    "Must be a dictionary",
                    value=type(config).__name__,
                    expected="dictionary",
                )
            )
            return False, self.errors, self.warnings

        # Validate top-level sections
        self._validate_application_config(config.get("application", {}))
        self._validate_logging_config(config.get("logging", {}))
        self._validate_coordinator_config(config.get("coordinator", {}))
        self._validate_credentials_config(config.get("credentials", {}))
        self._validate_health_config(config.get("health", {}))
        self._validate_agent_config(config.get("agent", {}))
        self._validate_executor_config(config.get("executor", {}))
        self._validate_retry_policy(config.get("report_retry_policy", {}))
        self._validate_restart_policy(config.get("restart_policy", {}))
        self._validate_hosts_config(config.get("hosts", {}))
        self._validate_api_config(config.get("api", {}))

        # Validate cross-section relationships
        self._validate_cross_section_relationships(config)

        return len(self.errors) == 0, self.errors, self.warnings

    def validate_environment_config(
        self, env_config: Dict[str, Any]
    ) -> Tuple[bool, List[ValidationError], List[ValidationError]]:
        """
        Validate the environment configuration file.

        Args:
            env_config: Environment configuration dictionary

        Returns:
            Tuple of (is_valid, errors, warnings)
        """
        self.errors = []
        self.warnings = []

        if not isinstance(env_config, dict):
            self.errors.append(
                ValidationError(
                    "environment",
                    "Must be a dictionary",
                    value=type(env_config).__name__,
                    expected="dictionary",
                )
            )
            return False, self.errors, self.warnings

        # Check for production flag
        if "production" not in env_config:
            self.errors.append(
                ValidationError(
                    "production", "Missing required field", expected="boolean value"
                )
            )
        elif not isinstance(env_config["production"], bool):
            self.errors.append(
                ValidationError(
                    "production",
                    "Must be a boolean value",
                    value=env_config["production"],
                    expected="boolean",
                )
            )

        # Check for any unknown fields
        known_fields = {"production"}
        unknown_fields = set(env_config.keys()) - known_fields
        if unknown_fields:
            self.warnings.append(
                ValidationError(
                    "environment",
                    "Unknown fields found",
                    value=unknown_fields,
                    expected="only 'production'",
                )
            )

        return len(self.errors) == 0, self.errors, self.warnings

    def _require_section(self, name: str, section: Any, what: str) -> bool:
        """Record an error for a missing or malformed section."""
        if not section:
            self.errors.append(
                ValidationError(name, "Missing required section", expected=what)
            )
            return False
        if not isinstance(section, dict):
            self.errors.append(
                ValidationError(
                    name,
                    "Must be a dictionary",
                    value=type(section).__name__,
                    expected="dictionary",
                )
            )
            return False
        return True

    def _check_number(
        self,
        path: str,
        value: Any,
        minimum: Optional[float] = None,
        integer: bool = False,
        allow_zero: bool = False,
    ) -> bool:
        """
        Check that a value is a positive number.

        Args:
            path: Dotted path used in the error
            value: Value to check
            minimum: Optional lower bound replacing the positivity check
            integer: Require an int
            allow_zero: Accept zero as well as positive values

        Returns:
            True if the value passed
        """
        kinds = (int,) if integer else (int, float)
        # bool is an int subclass
        if isinstance(value, bool) or not isinstance(value, kinds):
            self.errors.append(
                ValidationError(
                    path,
                    "Must be an integer" if integer else "Must be a number",
                    value=type(value).__name__,
                    expected="integer" if integer else "number",
                )
            )
            return False

        if minimum is not None:
            if value < minimum:
                self.errors.append(
                    ValidationError(
                        path, f"Must be at least {minimum}", value=value, expected=f">= {minimum}"
                    )
                )
                return False
        elif value < 0 or (value == 0 and not allow_zero):
            self.errors.append(
                ValidationError(
                    path,
                    "Must be non-negative" if allow_zero else "Must be positive",
                    value=value,
                    expected="non-negative number" if allow_zero else "positive number",
                )
            )
            return False
        return True

    def _check_bool(self, path: str, value: Any) -> bool:
        if not isinstance(value, bool):
            self.errors.append(
                ValidationError(
                    path, "Must be a boolean", value=type(value).__name__, expected="boolean"
                )
            )
            return False
        return True

    def _check_string_list(self, path: str, value: Any) -> bool:
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            self.errors.append(
                ValidationError(
                    path,
                    "Must be a list of strings",
                    value=value,
                    expected="list of strings",
                )
            )
            return False
        return True

    def _validate_application_config(self, app_config: Dict[str, Any]) -> None:
        """
        Validate application configuration.

        Args:
            app_config: Dictionary containing application configuration
        """
        if not self._require_section(
            "application", app_config, "dictionary with application settings"
        ):
            return

        if "max_concurrent_jobs" not in app_config:
            self.errors.append(
                ValidationError(
                    "application.max_concurrent_jobs",
                    "Missing required field",
                    expected="integer >= 1",
                )
            )
        else:
            self._check_number(
                "application.max_concurrent_jobs",
                app_config["max_concurrent_jobs"],
                minimum=1,
                integer=True,
            )

        if app_config.get("max_agents") is not None:
            self._check_number(
                "application.max_agents", app_config["max_agents"], minimum=1, integer=True
            )

        for interval_key in ["reconcile_interval", "shutdown_grace", "maintenance_interval"]:
            if interval_key in app_config:
                self._check_number(f"application.{interval_key}", app_config[interval_key])

        if "status_report_interval" in app_config:
            self._check_number(
                "application.status_report_interval",
                app_config["status_report_interval"],
                allow_zero=True,
            )

        if "auto_recover" in app_config:
            self._check_bool("application.auto_recover", app_config["auto_recover"])

    def _validate_logging_config(self, logging_config: Dict[str, Any]) -> None:
        """
        Validate logging configuration.

        Args:
            logging_config: Dictionary containing logging configuration
        """
        if not self._require_section(
            "logging", logging_config, "dictionary with logging settings"
        ):
            return

        # Validate log level
        if "level" not in logging_config:
            self.errors.append(
                ValidationError(
                    "logging.level",
                    "Missing required field",
                    expected=f"one of: {[level.value for level in LogLevel]}",
                )
            )
        else:
            try:
                LogLevel(str(logging_config["level"]).upper())
            except ValueError:
                self.errors.append(
                    ValidationError(
                        "logging.level",
                        "Invalid log level",
                        value=logging_config["level"],
                        expected=f"one of: {[level.value for level in LogLevel]}",
                    )
                )

        # Validate colorized flag
        if "colorized" not in logging_config:
            self.errors.append(
                ValidationError(
                    "logging.colorized",
                    "Missing required field",
                    expected="boolean value",
                )
            )
        else:
            self._check_bool("logging.colorized", logging_config["colorized"])

        # Validate colors if present
        if "colors" in logging_config:
            colors = logging_config["colors"]
            if not isinstance(colors, dict):
                self.errors.append(
                    ValidationError(
                        "logging.colors",
                        "Must be a dictionary",
                        value=type(colors).__name__,
                        expected="dictionary",
                    )
                )
            else:
                for level, color in colors.items():
                    if not isinstance(color, str):
                        self.errors.append(
                            ValidationError(
                                f"logging.colors.{level}",
                                "Must be a string",
                                value=type(color).__name__,
                                expected="string",
                            )
                        )

        # Optional rotating log file
        file_config = logging_config.get("file")
        if file_config is not None:
            if not isinstance(file_config, dict):
                self.errors.append(
                    ValidationError(
                        "logging.file",
                        "Must be a dictionary",
                        value=type(file_config).__name__,
                        expected="dictionary with path, max_bytes, backup_count",
                    )
                )
            else:
                if file_config.get("enabled", False) and not file_config.get("path"):
                    self.errors.append(
                        ValidationError(
                            "logging.file.path",
                            "Missing required field",
                            expected="log file path",
                        )
                    )
                for key in ["max_bytes", "backup_count"]:
                    if key in file_config:
                        self._check_number(
                            f"logging.file.{key}", file_config[key], integer=True
                        )

    def _validate_coordinator_config(self, coordinator_config: Dict[str, Any]) -> None:
        """Validate coordinator connection settings."""
        if not self._require_section(
            "coordinator", coordinator_config, "dictionary with coordinator settings"
        ):
            return

        url = coordinator_config.get("url")
        if url is not None:
            if not isinstance(url, str) or not url.startswith(("http://", "https://")):
                self.errors.append(
                    ValidationError(
                        "coordinator.url",
                        "Invalid coordinator URL",
                        value=url,
                        expected="http:// or https:// URL",
                    )
                )
            elif url.startswith("http://"):
                self.warnings.append(
                    ValidationError(
                        "coordinator.url",
                        "Registration tokens will be sent unencrypted",
                        value=url,
                        expected="https:// URL",
                    )
                )

        if "request_timeout" in coordinator_config:
            self._check_number("coordinator.request_timeout", coordinator_config["request_timeout"])

        simulated = coordinator_config.get("simulated", {})
        if simulated:
            if not isinstance(simulated, dict):
                self.errors.append(
                    ValidationError(
                        "coordinator.simulated",
                        "Must be a dictionary",
                        value=type(simulated).__name__,
                        expected="dictionary",
                    )
                )
            else:
                for key in ["lease_ttl", "token_lifetime"]:
                    if key in simulated:
                        self._check_number(f"coordinator.simulated.{key}", simulated[key])
                jobs = simulated.get("jobs", [])
                if not isinstance(jobs, list):
                    self.errors.append(
                        ValidationError(
                            "coordinator.simulated.jobs",
                            "Must be a list",
                            value=type(jobs).__name__,
                            expected="list of job definitions",
                        )
                    )
                else:
                    for index, job in enumerate(jobs):
                        if not isinstance(job, dict) or not job.get("command"):
                            self.errors.append(
                                ValidationError(
                                    f"coordinator.simulated.jobs.{index}",
                                    "Job needs a command",
                                    value=job,
                                    expected="dictionary with 'command'",
                                )
                            )

    def _validate_credentials_config(self, credentials_config: Dict[str, Any]) -> None:
        """Validate credential store settings."""
        if not credentials_config:
            return
        if not isinstance(credentials_config, dict):
            self.errors.append(
                ValidationError(
                    "credentials",
                    "Must be a dictionary",
                    value=type(credentials_config).__name__,
                    expected="dictionary",
                )
            )
            return

        if "check_interval" in credentials_config:
            self._check_number("credentials.check_interval", credentials_config["check_interval"])

        if "refresh_margin" in credentials_config:
            margin = credentials_config["refresh_margin"]
            if self._check_number("credentials.refresh_margin", margin) and margin >= 1:
                self.errors.append(
                    ValidationError(
                        "credentials.refresh_margin",
                        "Must be a fraction of the token lifetime",
                        value=margin,
                        expected="0 < margin < 1",
                    )
                )

        if "max_refresh_attempts" in credentials_config:
            self._check_number(
                "credentials.max_refresh_attempts",
                credentials_config["max_refresh_attempts"],
                minimum=1,
                integer=True,
            )

        if "persist_cache" in credentials_config:
            self._check_bool("credentials.persist_cache", credentials_config["persist_cache"])

    def _validate_health_config(self, health_config: Dict[str, Any]) -> None:
        """Validate the health monitor and its thresholds."""
        if not self._require_section(
            "health", health_config, "dictionary with health monitor settings"
        ):
            return

        if "interval" in health_config:
            interval = health_config["interval"]
            if self._check_number("health.interval", interval) and interval < 1:
                self.warnings.append(
                    ValidationError(
                        "health.interval",
                        "Value may cause high CPU usage",
                        value=interval,
                        expected=">= 1",
                    )
                )

        for key in ["window_size", "critical_consecutive", "unknown_streak_limit"]:
            if key in health_config:
                self._check_number(f"health.{key}", health_config[key], minimum=1, integer=True)

        window = health_config.get("window_size", 10)
        streak = health_config.get("critical_consecutive", 2)
        if isinstance(window, int) and isinstance(streak, int) and streak > window:
            self.errors.append(
                ValidationError(
                    "health.critical_consecutive",
                    "Critical streak cannot exceed the sample window",
                    value=f"streak={streak}, window={window}",
                    expected="critical_consecutive <= window_size",
                )
            )

        thresholds = health_config.get("thresholds", {})
        if not isinstance(thresholds, dict):
            self.errors.append(
                ValidationError(
                    "health.thresholds",
                    "Must be a dictionary",
                    value=type(thresholds).__name__,
                    expected="dictionary",
                )
            )
            return

        valid = True
        for key in ["temp_critical", "temp_degraded", "cpu_load_degraded"]:
            if key in thresholds:
                valid = self._check_number(f"health.thresholds.{key}", thresholds[key]) and valid
        for key in ["mem_min", "mem_critical", "disk_min"]:
            if key in thresholds:
                valid = (
                    self._check_number(
                        f"health.thresholds.{key}", thresholds[key], allow_zero=True
                    )
                    and valid
                )
        if not valid:
            return

        # Check threshold relationships
        degraded = thresholds.get("temp_degraded", 70.0)
        critical = thresholds.get("temp_critical", 80.0)
        if degraded >= critical:
            self.errors.append(
                ValidationError(
                    "health.thresholds",
                    "temp_degraded must be less than temp_critical",
                    value=f"degraded={degraded}, critical={critical}",
                    expected="degraded < critical",
                )
            )

        mem_min = thresholds.get("mem_min", 128)
        mem_critical = thresholds.get("mem_critical", 32)
        if mem_critical >= mem_min:
            self.errors.append(
                ValidationError(
                    "health.thresholds",
                    "mem_critical must be less than mem_min",
                    value=f"critical={mem_critical}, min={mem_min}",
                    expected="mem_critical < mem_min",
                )
            )

    def _validate_agent_config(self, agent_config: Dict[str, Any]) -> None:
        """Validate per-agent settings shared by every runner slot."""
        if not self._require_section("agent", agent_config, "dictionary with agent settings"):
            return

        for key in ["labels", "capabilities"]:
            if key in agent_config:
                self._check_string_list(f"agent.{key}", agent_config[key])

        for key in [
            "poll_interval",
            "poll_backoff_cap",
            "heartbeat_interval",
            "terminate_grace",
            "offline_check_interval",
        ]:
            if key in agent_config:
                self._check_number(f"agent.{key}", agent_config[key])

        for key in ["max_coordinator_errors", "result_history"]:
            if key in agent_config:
                self._check_number(f"agent.{key}", agent_config[key], minimum=1, integer=True)

        if "offline_job_policy" in agent_config:
            try:
                OfflineJobPolicy(agent_config["offline_job_policy"])
            except ValueError:
                self.errors.append(
                    ValidationError(
                        "agent.offline_job_policy",
                        "Invalid policy",
                        value=agent_config["offline_job_policy"],
                        expected=f"one of: {[p.value for p in OfflineJobPolicy]}",
                    )
                )

        poll = agent_config.get("poll_interval", 5.0)
        cap = agent_config.get("poll_backoff_cap", 60.0)
        if isinstance(poll, (int, float)) and isinstance(cap, (int, float)) and poll > cap:
            self.errors.append(
                ValidationError(
                    "agent",
                    "poll_interval must not exceed poll_backoff_cap",
                    value=f"interval={poll}, cap={cap}",
                    expected="poll_interval <= poll_backoff_cap",
                )
            )

    def _validate_executor_config(self, executor_config: Dict[str, Any]) -> None:
        """Validate sandbox limits and job timeouts."""
        if not self._require_section(
            "executor", executor_config, "dictionary with executor settings"
        ):
            return

        if "job_timeout" in executor_config:
            timeout = executor_config["job_timeout"]
            if self._check_number("executor.job_timeout", timeout) and timeout < 60:
                self.warnings.append(
                    ValidationError(
                        "executor.job_timeout",
                        "Very short job timeout",
                        value=timeout,
                        expected=">= 60 seconds",
                    )
                )

        for key in ["cancel_grace", "wait_slice", "kill_confirm_timeout", "log_drain_timeout"]:
            if key in executor_config:
                self._check_number(f"executor.{key}", executor_config[key])

        if "kill_confirm_attempts" in executor_config:
            self._check_number(
                "executor.kill_confirm_attempts",
                executor_config["kill_confirm_attempts"],
                minimum=1,
                integer=True,
            )

        limits = executor_config.get("limits", {}) or {}
        if not isinstance(limits, dict):
            self.errors.append(
                ValidationError(
                    "executor.limits",
                    "Must be a dictionary",
                    value=type(limits).__name__,
                    expected="dictionary with cpus, memory_mb",
                )
            )
        else:
            if limits.get("cpus") is not None:
                self._check_number("executor.limits.cpus", limits["cpus"])
            if limits.get("memory_mb") is not None:
                if self._check_number(
                    "executor.limits.memory_mb", limits["memory_mb"], minimum=6, integer=True
                ) and limits["memory_mb"] < 256:
                    self.warnings.append(
                        ValidationError(
                            "executor.limits.memory_mb",
                            "Most CI jobs need more memory",
                            value=limits["memory_mb"],
                            expected=">= 256",
                        )
                    )

        log_config = executor_config.get("logs", {}) or {}
        if not isinstance(log_config, dict):
            self.errors.append(
                ValidationError(
                    "executor.logs",
                    "Must be a dictionary",
                    value=type(log_config).__name__,
                    expected="dictionary with max_bytes, backup_count, max_age",
                )
            )
        else:
            for key in ["max_bytes", "backup_count"]:
                if key in log_config:
                    self._check_number(
                        f"executor.logs.{key}", log_config[key], integer=True, allow_zero=True
                    )
            if "max_age" in log_config:
                self._check_number("executor.logs.max_age", log_config["max_age"])

    def _validate_retry_policy(self, policy: Dict[str, Any]) -> None:
        """Validate the report retry policy."""
        if not self._require_section(
            "report_retry_policy", policy, "dictionary with retry settings"
        ):
            return

        for key in ["base_delay", "max_delay"]:
            if key in policy:
                self._check_number(f"report_retry_policy.{key}", policy[key])

        if "max_attempts" in policy:
            self._check_number(
                "report_retry_policy.max_attempts", policy["max_attempts"], minimum=1, integer=True
            )

        if "jitter" in policy:
            jitter = policy["jitter"]
            if self._check_number("report_retry_policy.jitter", jitter, allow_zero=True) and (
                jitter > 1
            ):
                self.errors.append(
                    ValidationError(
                        "report_retry_policy.jitter",
                        "Must be a fraction of the delay",
                        value=jitter,
                        expected="0 <= jitter <= 1",
                    )
                )

        base = policy.get("base_delay", 2.0)
        cap = policy.get("max_delay", 300.0)
        if isinstance(base, (int, float)) and isinstance(cap, (int, float)) and base > cap:
            self.errors.append(
                ValidationError(
                    "report_retry_policy",
                    "base_delay must not exceed max_delay",
                    value=f"base={base}, max={cap}",
                    expected="base_delay <= max_delay",
                )
            )

    def _validate_restart_policy(self, policy: Dict[str, Any]) -> None:
        """Validate the crashed-agent restart policy."""
        if not policy:
            return
        if not isinstance(policy, dict):
            self.errors.append(
                ValidationError(
                    "restart_policy",
                    "Must be a dictionary",
                    value=type(policy).__name__,
                    expected="dictionary",
                )
            )
            return

        if "max_restarts" in policy:
            self._check_number(
                "restart_policy.max_restarts", policy["max_restarts"], minimum=0, integer=True
            )
        for key in ["window", "backoff_base", "backoff_cap"]:
            if key in policy:
                self._check_number(f"restart_policy.{key}", policy[key])

    def _validate_hosts_config(self, hosts_config: Dict[str, Any]) -> None:
        """
        Validate hosts configuration section.

        Args:
            hosts_config: Dictionary mapping host ids to host settings
        """
        if not self._require_section(
            "hosts", hosts_config, "dictionary with host configurations"
        ):
            return

        for host_id, host_config in hosts_config.items():
            if not isinstance(host_config, dict):
                self.errors.append(
                    ValidationError(
                        f"hosts.{host_id}",
                        "Must be a dictionary",
                        value=type(host_config).__name__,
                        expected="dictionary",
                    )
                )
                continue

            if "capacity" not in host_config:
                self.errors.append(
                    ValidationError(
                        f"hosts.{host_id}.capacity",
                        "Missing required field",
                        expected="integer >= 0",
                    )
                )
            else:
                self._check_number(
                    f"hosts.{host_id}.capacity", host_config["capacity"], minimum=0, integer=True
                )

            for key in ["labels", "capabilities"]:
                if key in host_config:
                    self._check_string_list(f"hosts.{host_id}.{key}", host_config[key])

    def _validate_api_config(self, api_config: Dict[str, Any]) -> None:
        """Validate the operator API settings."""
        if not api_config:
            return
        if not isinstance(api_config, dict):
            self.errors.append(
                ValidationError(
                    "api",
                    "Must be a dictionary",
                    value=type(api_config).__name__,
                    expected="dictionary",
                )
            )
            return

        for key in ["enabled", "debug"]:
            if key in api_config:
                self._check_bool(f"api.{key}", api_config[key])

        if "port" in api_config:
            port = api_config["port"]
            if self._check_number("api.port", port, minimum=1, integer=True) and port > 65535:
                self.errors.append(
                    ValidationError(
                        "api.port", "Port out of range", value=port, expected="1-65535"
                    )
                )

        if api_config.get("host") not in (None, "127.0.0.1", "localhost"):
            self.warnings.append(
                ValidationError(
                    "api.host",
                    "Operator API is reachable from other machines and has no authentication",
                    value=api_config["host"],
                    expected="127.0.0.1",
                )
            )

    def _validate_cross_section_relationships(self, config: Dict[str, Any]) -> None:
        """
        Validate relationships between different configuration sections.

        Args:
            config: Complete configuration dictionary
        """
        hosts = config.get("hosts") or {}
        if not isinstance(hosts, dict):
            return

        capacity = sum(
            host.get("capacity", 0)
            for host in hosts.values()
            if isinstance(host, dict) and isinstance(host.get("capacity"), int)
        )
        if hosts and capacity == 0:
            self.warnings.append(
                ValidationError(
                    "hosts",
                    "No host has any capacity",
                    value=capacity,
                    expected="at least one agent slot",
                )
            )

        app_config = config.get("application") or {}
        if not isinstance(app_config, dict):
            return
        max_jobs = app_config.get("max_concurrent_jobs")
        max_agents = app_config.get("max_agents") or max_jobs
        if isinstance(max_agents, int) and capacity > max_agents:
            self.warnings.append(
                ValidationError(
                    "hosts",
                    "Desired agents exceed max_agents, extra slots stay idle",
                    value=f"capacity={capacity}, max_agents={max_agents}",
                    expected=f"total capacity <= {max_agents}",
                )
            )
        if (
            isinstance(max_jobs, int)
            and isinstance(max_agents, int)
            and max_agents < max_jobs
        ):
            self.warnings.append(
                ValidationError(
                    "application.max_agents",
                    "Fewer agents than job permits, some permits are never used",
                    value=f"max_agents={max_agents}, max_concurrent_jobs={max_jobs}",
                    expected="max_agents >= max_concurrent_jobs",
                )
            )


def _report(logger: logging.Logger, source: Path, errors, warnings, label: str) -> None:
    if errors:
        logger.error(f"{label} errors in {source}:")
        for error in errors:
            logger.error(f"  - {error}")

    if warnings:
        logger.warning(f"{label} warnings in {source}:")
        for warning in warnings:
            logger.warning(f"  - {warning}")


def load_merged_config(config_paths: List[Path]) -> Dict[str, Any]:
    """
    Load several YAML files into one configuration dictionary.

    Later files override top-level sections of earlier ones.

    Raises:
        FileNotFoundError: If a file is missing
        yaml.YAMLError: If a file is not valid YAML
    """
    config: Dict[str, Any] = {}
    for path in config_paths:
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise yaml.YAMLError(f"{path} does not contain a mapping")
        config.update(loaded)
    return config


def validate_configuration_files(config_paths: List[Path], env_path: Path) -> bool:
    """
    Validate the configuration files and report any issues.

    Args:
        config_paths: Paths to fleet.yaml and hosts.yaml, merged in order
        env_path: Path to environment.yaml

    Returns:
        True if all validations pass, False otherwise
    """
    validator = ConfigValidator()
    logger = logging.getLogger(__name__)
    all_valid = True
    source = Path(config_paths[0]).parent if config_paths else Path(".")

    # Validate main config
    try:
        config = load_merged_config(config_paths)

        is_valid, errors, warnings = validator.validate_config(config)
        all_valid = all_valid and is_valid
        _report(logger, source, errors, warnings, "Configuration")

    except FileNotFoundError as e:
        logger.error(f"Configuration file not found: {e.filename}")
        all_valid = False
    except yaml.YAMLError as e:
        logger.error(f"YAML parsing error in {source}: {e}")
        all_valid = False

    # Validate environment config
    try:
        with open(env_path, "r", encoding="utf-8") as f:
            env_config = yaml.safe_load(f)

        is_valid, errors, warnings = validator.validate_environment_config(env_config)
        all_valid = all_valid and is_valid
        _report(logger, env_path, errors, warnings, "Environment configuration")

    except FileNotFoundError:
        logger.warning(f"Environment file not found: {env_path} (using defaults)")
    except yaml.YAMLError as e:
        logger.error(f"YAML parsing error in {env_path}: {e}")
        all_valid = False

    return all_valid
