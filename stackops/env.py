# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

The remote command document runs stackops non-interactively, so every
setting the shell scripts used to read from the environment is honoured
here. Explicit keyword overrides (from CLI options) win over environment
values.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from stackops.config import DEFAULT_REGION, QuiesceMode, RemoteConfig, StackOpsConfig
from stackops.errors import explain_invalid_quiesce_mode, explain_invalid_retention_days
from stackops.exceptions import ConfigurationError
from stackops.targets import parse_targets

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_quiesce_mode(value: str | None) -> QuiesceMode:
    if not value:
        return QuiesceMode.PAUSE
    try:
        return QuiesceMode(value.strip().lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_quiesce_mode(value)) from exc


def _parse_retention_days(value: str | None) -> int:
    if not value:
        return 30
    try:
        days = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_retention_days(value)) from exc
    if days < 1:
        raise ConfigurationError(explain_invalid_retention_days(value))
    return days


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _optional_path(value: str | None) -> Path | None:
    return Path(value) if value else None


def create_config_from_env(**overrides: Any) -> StackOpsConfig:
    """
    Create a StackOpsConfig from environment variables plus overrides.

    Environment variables:
        - BACKUP_BUCKET: Backup bucket (default: terraform output lookup)
        - AWS_REGION: AWS region (default: eu-central-1)
        - STACKOPS_TARGETS: e.g. "openwebui-data,caddy-data:caddy"
        - STACKOPS_QUIESCE_MODE: 'pause' | 'stop' | 'none' (default: pause)
        - STACKOPS_SCRATCH_DIR: Parent of scratch directories
        - STACKOPS_COMPOSE_DIR: Compose directory (default: /opt/app/compose)
        - COMPOSE_PROJECT_NAME: Compose project name
        - STACKOPS_BACKUP_PREFIX: Key prefix (default: backups)
        - STACKOPS_RETENTION_DAYS: Purge threshold in days (default: 30)
        - STACKOPS_PURGE: Purge expired backups after a run (default: off)
        - STACKOPS_JOURNAL: Path of the run journal database
        - STACKOPS_HELPER_IMAGE: Helper container image
        - STACKOPS_ENDPOINT_URL: S3-compatible endpoint override

    Overrides with a value of None are ignored, so CLI options can be
    passed through unconditionally.
    """

    values: dict[str, Any] = {
        "bucket": os.getenv("BACKUP_BUCKET") or None,
        "region": os.getenv("AWS_REGION") or DEFAULT_REGION,
        "targets": parse_targets(os.getenv("STACKOPS_TARGETS")),
        "quiesce_mode": _parse_quiesce_mode(os.getenv("STACKOPS_QUIESCE_MODE")),
        "retention_days": _parse_retention_days(os.getenv("STACKOPS_RETENTION_DAYS")),
        "purge_expired": _parse_bool(os.getenv("STACKOPS_PURGE")),
        "project_name": os.getenv("COMPOSE_PROJECT_NAME") or None,
        "journal_path": _optional_path(os.getenv("STACKOPS_JOURNAL")),
        "endpoint_url": os.getenv("STACKOPS_ENDPOINT_URL") or None,
    }

    optional_strings = {
        "key_prefix": "STACKOPS_BACKUP_PREFIX",
        "helper_image": "STACKOPS_HELPER_IMAGE",
    }
    for name, env_name in optional_strings.items():
        value = os.getenv(env_name)
        if value:
            values[name] = value

    optional_paths = {
        "scratch_root": "STACKOPS_SCRATCH_DIR",
        "compose_dir": "STACKOPS_COMPOSE_DIR",
    }
    for name, env_name in optional_paths.items():
        value = os.getenv(env_name)
        if value:
            values[name] = Path(value)

    for name, value in overrides.items():
        if value is None:
            continue
        if name == "targets":
            value = parse_targets(value)
        elif name == "quiesce_mode" and not isinstance(value, QuiesceMode):
            value = _parse_quiesce_mode(str(value))
        values[name] = value

    return StackOpsConfig(**values)


def create_remote_config_from_env(**overrides: Any) -> RemoteConfig:
    """
    Create a RemoteConfig from environment variables plus overrides.

    Environment variables:
        - AWS_REGION: AWS region (default: eu-central-1)
        - STACKOPS_INSTANCE_ID: Instance id (default: terraform output)
        - STACKOPS_TERRAFORM_DIR: Local terraform directory (default: ./terraform)
        - STACKOPS_DOCUMENT: SSM document name (default: llm-app-management)
    """

    values: dict[str, Any] = {
        "region": os.getenv("AWS_REGION") or DEFAULT_REGION,
        "instance_id": os.getenv("STACKOPS_INSTANCE_ID") or None,
    }
    if os.getenv("STACKOPS_TERRAFORM_DIR"):
        values["terraform_dir"] = Path(os.environ["STACKOPS_TERRAFORM_DIR"])
    if os.getenv("STACKOPS_DOCUMENT"):
        values["document_name"] = os.environ["STACKOPS_DOCUMENT"]

    values.update({k: v for k, v in overrides.items() if v is not None})
    return RemoteConfig(**values)
