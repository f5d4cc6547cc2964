"""Tests for the shipped example configuration."""

import os
import unittest
from datetime import time

import yaml

import mr_watchdog


class TestExampleConfig(unittest.TestCase):
    """Validate config.example.yaml against the settings loader."""

    def test_example_config_is_valid(self):
        """The example config should build settings without changes."""
        config_path = os.path.join(
            os.path.dirname(os.path.dirname(__file__)),
            'config.example.yaml'
        )
        config = mr_watchdog.load_config(config_path)
        settings = mr_watchdog.build_settings(config)

        self.assertEqual(settings.owner, mr_watchdog.GroupOwner('my-group'))
        self.assertEqual(settings.active_window.start, time(9, 0))
        self.assertEqual(settings.active_window.end, time(18, 0))
        self.assertEqual(settings.notification.repeat_after_minutes, 0)

    def test_unquoted_window_times(self):
        """Unquoted HH:MM values (read by YAML as base-60 ints) still work."""
        window = yaml.safe_load("active_window:\n  start: 08:30\n  end: 17:45\n")
        self.assertEqual(window['active_window']['end'], 17 * 60 + 45)

        config = mr_watchdog.load_config(os.path.join(
            os.path.dirname(os.path.dirname(__file__)), 'config.example.yaml'
        ))
        config.update(window)
        settings = mr_watchdog.build_settings(config)

        self.assertEqual(settings.active_window.start, time(8, 30))
        self.assertEqual(settings.active_window.end, time(17, 45))
