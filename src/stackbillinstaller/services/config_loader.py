"""Configuration loader for the StackBill installer."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from stackbillinstaller.errors import InstallerError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "domain",
        "ssl_cert",
        "ssl_key",
        "ssl_ca",
        "namespace",
        "skip_infra",
        "skip_db",
        "mysql_password",
        "mongodb_password",
        "rabbitmq_password",
        "server_ip",
        "release",
        "chart",
        "credentials_file",
        "manifest_file",
        "registry_token_file",
        "auto_configure",
        "dry_run",
        "run_timeout_minutes",
        "verbose",
        "log_file",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise InstallerError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise InstallerError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise InstallerError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise InstallerError(f"Unknown configuration keys: {unknown_list}")

        return parsed
