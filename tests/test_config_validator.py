#!/usr/bin/env python3
"""
Unit tests for configuration validation
"""

import copy
import sys
import tempfile
import unittest
from pathlib import Path

# Add the src directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import yaml

from config_validator import ConfigValidator, load_merged_config, validate_configuration_files

CONFIG_DIR = Path(__file__).parent.parent / "configuration"
CONFIG_FILES = [CONFIG_DIR / "fleet.yaml", CONFIG_DIR / "hosts.yaml"]


class TestShippedConfiguration(unittest.TestCase):
    """The configuration files in the repository must validate."""

    def test_shipped_files_are_valid(self):
        self.assertTrue(
            validate_configuration_files(CONFIG_FILES, CONFIG_DIR / "environment.yaml")
        )

    def test_hosts_are_merged_in(self):
        config = load_merged_config(CONFIG_FILES)
        self.assertIn("hosts", config)
        self.assertIn("agent", config)
        self.assertEqual(config["hosts"]["pi-01"]["capacity"], 2)


class TestConfigValidator(unittest.TestCase):
    """Test cases for individual rules."""

    @classmethod
    def setUpClass(cls):
        cls.base_config = load_merged_config(CONFIG_FILES)

    def setUp(self):
        self.validator = ConfigValidator()
        self.config = copy.deepcopy(self.base_config)

    def error_paths(self):
        is_valid, errors, _ = self.validator.validate_config(self.config)
        self.assertEqual(is_valid, not errors)
        return [error.path for error in errors]

    def warning_paths(self):
        _, _, warnings = self.validator.validate_config(self.config)
        return [warning.path for warning in warnings]

    def test_base_config_is_clean(self):
        self.assertEqual(self.error_paths(), [])

    def test_not_a_dictionary(self):
        is_valid, errors, _ = self.validator.validate_config(["not", "a", "dict"])
        self.assertFalse(is_valid)
        self.assertEqual(errors[0].path, "config")

    def test_required_sections(self):
        for section in ["application", "logging", "health", "agent", "executor", "hosts"]:
            with self.subTest(section=section):
                self.config = copy.deepcopy(self.base_config)
                del self.config[section]
                self.assertIn(section, self.error_paths())

    def test_optional_sections(self):
        for section in ["credentials", "restart_policy", "api"]:
            del self.config[section]
        self.assertEqual(self.error_paths(), [])

    def test_max_concurrent_jobs_required(self):
        del self.config["application"]["max_concurrent_jobs"]
        self.assertIn("application.max_concurrent_jobs", self.error_paths())

        self.config["application"]["max_concurrent_jobs"] = 0
        self.assertIn("application.max_concurrent_jobs", self.error_paths())

    def test_invalid_log_level(self):
        self.config["logging"]["level"] = "LOUD"
        self.assertIn("logging.level", self.error_paths())

    def test_coordinator_url(self):
        self.config["coordinator"]["url"] = "ftp://ci.example.com"
        self.assertIn("coordinator.url", self.error_paths())

        self.config["coordinator"]["url"] = "http://ci.example.com"
        self.assertEqual(self.error_paths(), [])
        self.assertIn("coordinator.url", self.warning_paths())

    def test_simulated_job_needs_command(self):
        self.config["coordinator"]["simulated"]["jobs"] = [{"env": {}}]
        self.assertIn("coordinator.simulated.jobs.0", self.error_paths())

    def test_temperature_thresholds_ordered(self):
        self.config["health"]["thresholds"]["temp_degraded"] = 85
        self.assertIn("health.thresholds", self.error_paths())

    def test_memory_thresholds_ordered(self):
        self.config["health"]["thresholds"]["mem_critical"] = 256
        self.assertIn("health.thresholds", self.error_paths())

    def test_critical_streak_within_window(self):
        self.config["health"]["critical_consecutive"] = 20
        self.assertIn("health.critical_consecutive", self.error_paths())

    def test_poll_interval_within_cap(self):
        self.config["agent"]["poll_interval"] = 120
        self.assertIn("agent", self.error_paths())

    def test_offline_job_policy(self):
        self.config["agent"]["offline_job_policy"] = "abandon"
        self.assertIn("agent.offline_job_policy", self.error_paths())

    def test_booleans_are_not_numbers(self):
        self.config["agent"]["poll_interval"] = True
        self.assertIn("agent.poll_interval", self.error_paths())

    def test_retry_policy(self):
        self.config["report_retry_policy"]["jitter"] = 1.5
        self.config["report_retry_policy"]["base_delay"] = 600
        paths = self.error_paths()
        self.assertIn("report_retry_policy.jitter", paths)
        self.assertIn("report_retry_policy", paths)

    def test_refresh_margin_is_fraction(self):
        self.config["credentials"]["refresh_margin"] = 1
        self.assertIn("credentials.refresh_margin", self.error_paths())

    def test_host_capacity(self):
        self.config["hosts"]["pi-02"] = {"labels": ["pi4"]}
        self.config["hosts"]["pi-03"] = {"capacity": -1}
        paths = self.error_paths()
        self.assertIn("hosts.pi-02.capacity", paths)
        self.assertIn("hosts.pi-03.capacity", paths)

    def test_capacity_warnings(self):
        self.config["hosts"]["pi-01"]["capacity"] = 0
        self.assertIn("hosts", self.warning_paths())

        self.config["hosts"]["pi-01"]["capacity"] = 5
        self.assertIn("hosts", self.warning_paths())

    def test_api_exposed_warning(self):
        self.config["api"]["host"] = "0.0.0.0"
        self.assertEqual(self.error_paths(), [])
        self.assertIn("api.host", self.warning_paths())

    def test_api_port_range(self):
        self.config["api"]["port"] = 70000
        self.assertIn("api.port", self.error_paths())


class TestEnvironmentConfig(unittest.TestCase):
    """Test cases for environment.yaml."""

    def setUp(self):
        self.validator = ConfigValidator()

    def test_valid(self):
        is_valid, errors, warnings = self.validator.validate_environment_config(
            {"production": True}
        )
        self.assertTrue(is_valid)
        self.assertEqual(warnings, [])

    def test_missing_or_wrong_type(self):
        for env in ({}, {"production": "yes"}, None):
            with self.subTest(env=env):
                is_valid, _, _ = self.validator.validate_environment_config(env)
                self.assertFalse(is_valid)

    def test_unknown_fields_warn(self):
        _, _, warnings = self.validator.validate_environment_config(
            {"production": False, "debug": True}
        )
        self.assertEqual(warnings[0].path, "environment")


class TestLoadMergedConfig(unittest.TestCase):
    """Test cases for merging configuration files."""

    def test_later_files_override_sections(self):
        with tempfile.TemporaryDirectory() as tmp:
            first = Path(tmp) / "a.yaml"
            second = Path(tmp) / "b.yaml"
            first.write_text("agent:\n  poll_interval: 5\nhosts:\n  pi-01:\n    capacity: 1\n")
            second.write_text("hosts:\n  pi-02:\n    capacity: 2\n")

            config = load_merged_config([first, second])
            self.assertEqual(config["agent"]["poll_interval"], 5)
            self.assertEqual(list(config["hosts"]), ["pi-02"])

    def test_non_mapping_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "list.yaml"
            path.write_text("- one\n- two\n")
            with self.assertRaises(yaml.YAMLError):
                load_merged_config([path])

    def test_missing_file_fails_validation(self):
        self.assertFalse(
            validate_configuration_files(
                [CONFIG_DIR / "missing.yaml"], CONFIG_DIR / "environment.yaml"
            )
        )


if __name__ == "__main__":
    unittest.main()
