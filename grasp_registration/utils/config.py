"""
Configuration loading.

The packaged config.yaml holds the registration defaults and the debug /
logging switches. Callers can point load_config() at their own file.
"""
import os

import yaml


DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.yaml")


def load_config(path=None):
    """
    Load configuration from YAML file.
    Default path is config.yaml in the grasp_registration package.
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH

    with open(path, 'r') as f:
        config = yaml.safe_load(f)
    return config or {}


def get_registration_config(config):
    """Get the registration parameter section."""
    return config.get('registration', {}) or {}


def get_debug_config(config):
    """Get debug/logging settings."""
    return config.get('debug', {}) or {}
