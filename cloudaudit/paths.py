#!/usr/bin/env python3
"""
Cloud Audit Engine - Path Resolver
Resolves every on-disk location (config, key file, database, logs) from a
single home directory: CLOUDAUDIT_HOME if set, otherwise ~/.cloudaudit.
"""

import os
from pathlib import Path
from typing import Optional


class CloudAuditPaths:
    """Home-relative path resolver."""

    _instance: Optional['CloudAuditPaths'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._initialized = True
        self._resolve_home()

    def _resolve_home(self):
        """Resolve CLOUDAUDIT_HOME from environment or fall back to ~/.cloudaudit."""
        if os.environ.get('CLOUDAUDIT_HOME'):
            self.home = Path(os.environ['CLOUDAUDIT_HOME']).expanduser().resolve()
        else:
            self.home = Path.home() / '.cloudaudit'

    @property
    def config(self) -> Path:
        """Configuration directory."""
        return self.home / 'config'

    @property
    def config_active(self) -> Path:
        """Active configuration file."""
        return self.home / 'config' / 'active' / 'config.yaml'

    @property
    def credential_key(self) -> Path:
        """Fernet key used to encrypt stored cloud credentials."""
        return self.home / 'config' / 'active' / '.cred_key'

    @property
    def data(self) -> Path:
        """Data directory (database, logs, per-audit output)."""
        return self.home / 'data'

    @property
    def logs(self) -> Path:
        """Component logs."""
        return self.home / 'data' / 'logs'

    @property
    def audits(self) -> Path:
        """Per-audit working directories."""
        return self.home / 'data' / 'audits'

    def audit_dir(self, audit_id: str) -> Path:
        """Get directory for a specific audit run."""
        path = self.audits / audit_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def __str__(self) -> str:
        return f"CloudAuditPaths(home={self.home})"

    def __repr__(self) -> str:
        return self.__str__()


# Singleton instance for easy import
paths = CloudAuditPaths()


def get_paths() -> CloudAuditPaths:
    """Get the singleton paths instance."""
    return paths
