# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops - Backup, restore and remote operations for a single-instance
LLM chat stack (Caddy, OpenWebUI, LiteLLM) running under Docker Compose.

Volume archives are stored in S3 as ``backups/<target>_<YYYYMMDD_HHMMSS>.tar.gz``.
"""

__version__ = "0.1.0"

# Configuration
from stackops.config import QuiesceMode, RemoteConfig, StackOpsConfig
from stackops.env import create_config_from_env, create_remote_config_from_env

# Orchestration
from stackops.backup import BackupResult, run_backup
from stackops.restore import RestoreResult, run_restore
from stackops.actions import Action, run_action, render_ssm_document

__all__ = [
    # Version
    "__version__",
    # Configuration
    "QuiesceMode",
    "RemoteConfig",
    "StackOpsConfig",
    "create_config_from_env",
    "create_remote_config_from_env",
    # Orchestration
    "BackupResult",
    "RestoreResult",
    "run_backup",
    "run_restore",
    "Action",
    "run_action",
    "render_ssm_document",
]
