#!/usr/bin/env python3
"""
VM Snapshot Configuration and Secrets
Purpose: Load vm_snapshot settings from YAML and resolve vCenter credentials
from environment variables, a secrets file, the config file or a prompt
"""

import copy
import getpass
import os
import sys
from pathlib import Path
from typing import Dict, Any, Optional

try:
    import yaml
except ImportError:
    print("ERROR: pyyaml module not found. Install with: uv sync")
    sys.exit(1)


DEFAULT_CONFIG: Dict[str, Any] = {
    "vcenter": {
        "hostname": None,
        "username": None,
        "password": None,
        "port": 443,
        "verify_ssl": False,
    },
    "defaults": {
        "free_space_gb": 20,
        "free_space_percent": 10,
        "column": "Name",
        "output_dir": ".",
    },
}


class SecretsManager:
    """Manage vCenter credentials from multiple sources with priority order"""

    def __init__(self, project_dir: Path):
        self.project_dir = project_dir
        self.secrets_file = project_dir / "config" / "snapshot-secrets.yaml"
        self._secrets_cache = None

    def get_secret(
        self,
        key: str,
        config_value: Optional[str] = None,
        env_var: Optional[str] = None,
        required: bool = True,
        secret: bool = True
    ) -> Optional[str]:
        """
        Get secret value with priority order:
        1. Environment variable (if env_var specified)
        2. Secrets file (snapshot-secrets.yaml)
        3. Config file value (if config_value provided)
        4. Prompt user (if required=True)

        Args:
            key: Secret key name in secrets file
            config_value: Value from main config file (fallback)
            env_var: Environment variable name to check
            required: If True, will prompt if not found
            secret: If True, the prompt does not echo input

        Returns:
            Secret value or None if not found and not required
        """
        if env_var:
            env_value = os.environ.get(env_var)
            if env_value:
                return env_value

        secrets = self._load_secrets_file()
        if secrets and secrets.get(key):
            return secrets[key]

        if config_value:
            return config_value

        if required:
            prompt = f"Enter {key.replace('_', ' ')}: "
            if secret:
                return getpass.getpass(prompt)
            return input(prompt)

        return None

    def _load_secrets_file(self) -> Optional[Dict[str, Any]]:
        """Load secrets from snapshot-secrets.yaml (cached)"""
        if self._secrets_cache is not None:
            return self._secrets_cache

        if not self.secrets_file.exists():
            return None

        try:
            with open(self.secrets_file, 'r', encoding='utf-8') as f:
                self._secrets_cache = yaml.safe_load(f) or {}
            return self._secrets_cache
        except (OSError, yaml.YAMLError) as e:
            print(f"WARNING: Failed to load secrets file: {e}")
            return None

    def get_vcenter_username(self, config_value: Optional[str] = None) -> str:
        """Get vCenter username"""
        username = self.get_secret(
            key="vcenter_username",
            config_value=config_value,
            env_var="SNAPSHOT_VCENTER_USER",
            required=True,
            secret=False
        )
        assert username is not None  # required=True guarantees non-None
        return username

    def get_vcenter_password(self, config_value: Optional[str] = None) -> str:
        """Get vCenter password"""
        password = self.get_secret(
            key="vcenter_password",
            config_value=config_value,
            env_var="SNAPSHOT_VCENTER_PASSWORD",
            required=True
        )
        assert password is not None  # required=True guarantees non-None
        return password


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_file: Path) -> Dict[str, Any]:
    """
    Load vm_snapshot config merged over the built-in defaults

    A missing config file is not an error: every setting has a default or
    comes from the command line.
    """
    if not config_file.exists():
        return _merge(DEFAULT_CONFIG, {})

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"Failed to load config {config_file}: {e}")

    if not isinstance(loaded, dict):
        raise ValueError(f"Config {config_file} must be a YAML mapping")

    for section in DEFAULT_CONFIG:
        # A section with every key commented out loads as None
        if loaded.get(section) is None:
            loaded[section] = {}
        elif not isinstance(loaded[section], dict):
            raise ValueError(f"Config {config_file}: '{section}' must be a YAML mapping")

    config = _merge(DEFAULT_CONFIG, loaded)
    _validate_thresholds(config["defaults"], config_file)
    return config


def _validate_thresholds(defaults: Dict[str, Any], config_file: Path) -> None:
    """Apply the command line's threshold rules to config values."""
    free_space_gb = defaults["free_space_gb"]
    if isinstance(free_space_gb, bool) or not isinstance(free_space_gb, int) or free_space_gb < 0:
        raise ValueError(
            f"Config {config_file}: defaults.free_space_gb must be a whole number "
            f"0 or greater, got {free_space_gb!r}"
        )

    free_space_percent = defaults["free_space_percent"]
    if (
        isinstance(free_space_percent, bool)
        or not isinstance(free_space_percent, int)
        or not 0 <= free_space_percent <= 100
    ):
        raise ValueError(
            f"Config {config_file}: defaults.free_space_percent must be a whole number "
            f"between 0 and 100, got {free_space_percent!r}"
        )


def load_config_with_secrets(config_file: Path) -> Dict[str, Any]:
    """
    Load config file and fill in vCenter credentials

    Credentials are resolved through SecretsManager, rooted at the project
    directory that holds the config/ folder.
    """
    config = load_config(config_file)

    project_dir = config_file.resolve().parent.parent
    secrets_mgr = SecretsManager(project_dir)

    vcenter = config['vcenter']
    vcenter['username'] = secrets_mgr.get_vcenter_username(vcenter.get('username'))
    vcenter['password'] = secrets_mgr.get_vcenter_password(vcenter.get('password'))

    return config
