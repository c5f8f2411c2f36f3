# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so a run cannot
change its bucket, targets or paths halfway through.
"""

import re
import tempfile
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Tuple

from stackops.targets import DEFAULT_PREFIX, DEFAULT_TARGETS, Target

DEFAULT_REGION = "eu-central-1"
DEFAULT_PROJECT_NAME = "llm-stack"
DEFAULT_SERVICES: Tuple[str, ...] = ("caddy", "openwebui", "litellm")
DEFAULT_DOCUMENT_NAME = "llm-app-management"


class QuiesceMode(str, Enum):
    """How owning services are quieted while their volumes are copied."""

    PAUSE = "pause"  # Freeze processes, keep containers
    STOP = "stop"  # Stop containers so file locks are released
    NONE = "none"  # Copy live data, accept weaker consistency


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate S3 bucket name according to AWS rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens, periods
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_project_name(name: str) -> bool:
    """Compose project names: lowercase alphanumerics, dashes, underscores."""
    return bool(re.match(r"^[a-z0-9][a-z0-9_-]*$", name))


@dataclass(frozen=True)
class StackOpsConfig:
    """
    Immutable configuration for host-side operations (backup, restore,
    maintenance actions).
    """

    # Backup bucket; None means "discover from terraform output"
    bucket: str | None = None

    # AWS region of the bucket
    region: str = DEFAULT_REGION

    # Directory holding the compose file
    compose_dir: Path = field(default_factory=lambda: Path("/opt/app/compose"))

    # Git checkout that redeploy pulls
    app_dir: Path = field(default_factory=lambda: Path("/opt/app"))

    # Terraform working directory used for output lookups on the host
    terraform_dir: Path = field(default_factory=lambda: Path("/opt/app/terraform"))

    # Compose project name; None means resolve from env/compose file/default
    project_name: str | None = None

    # Data units to back up or restore
    targets: Tuple[Target, ...] = DEFAULT_TARGETS

    # Quiesce strategy for backups
    quiesce_mode: QuiesceMode = QuiesceMode.PAUSE

    # Key prefix inside the bucket
    key_prefix: str = DEFAULT_PREFIX

    # Parent directory for per-target scratch directories
    scratch_root: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))

    # Image used for disposable helper containers
    helper_image: str = "ubuntu:24.04"

    # Age threshold for the optional purge pass
    retention_days: int = 30

    # Delete objects older than retention_days after a backup
    purge_expired: bool = False

    # How many recent objects to show when listing
    list_limit: int = 20

    # Services of the stack (for status and log actions)
    services: Tuple[str, ...] = DEFAULT_SERVICES

    # User owning the compose deployment; commands run as this user
    compose_user: str | None = "ubuntu"

    # Local run journal; None disables journaling
    journal_path: Path | None = None

    # S3-compatible endpoint override
    endpoint_url: str | None = None

    # Seconds to wait after restarting services before reporting status
    settle_seconds: float = 5.0

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if self.bucket is not None and not _validate_bucket_name(self.bucket):
            errors.append(f"Invalid bucket name: {self.bucket}")

        if self.project_name is not None and not _validate_project_name(self.project_name):
            errors.append(f"Invalid compose project name: {self.project_name}")

        if not self.targets:
            errors.append("At least one target is required")

        names = [t.short_name for t in self.targets]
        if len(names) != len(set(names)):
            errors.append(f"Duplicate target names: {names}")

        if self.retention_days < 1:
            errors.append(f"retention_days must be >= 1, got {self.retention_days}")

        if self.list_limit < 1:
            errors.append(f"list_limit must be >= 1, got {self.list_limit}")

        if self.settle_seconds < 0:
            errors.append(f"settle_seconds must be >= 0, got {self.settle_seconds}")

        if not isinstance(self.quiesce_mode, QuiesceMode):
            errors.append(f"Invalid quiesce_mode: {self.quiesce_mode!r}")

        if errors:
            from stackops.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    def with_updates(self, **kwargs) -> "StackOpsConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        return replace(self, **kwargs)


@dataclass(frozen=True)
class RemoteConfig:
    """Immutable configuration for operator-side remote dispatch."""

    region: str = DEFAULT_REGION

    # EC2 instance running the stack; None means terraform output lookup
    instance_id: str | None = None

    # Local terraform working directory holding the instance_id output
    terraform_dir: Path = field(default_factory=lambda: Path("terraform"))

    # SSM command document that runs host actions
    document_name: str = DEFAULT_DOCUMENT_NAME

    # Poll interval while waiting for a command invocation
    poll_seconds: float = 2.0

    # Give up waiting for an invocation after this many seconds
    wait_timeout: float = 900.0

    def __post_init__(self) -> None:
        errors: List[str] = []

        if self.instance_id is not None and not re.match(r"^i-[0-9a-f]{8,17}$", self.instance_id):
            errors.append(f"Invalid instance id: {self.instance_id}")

        if self.poll_seconds <= 0:
            errors.append(f"poll_seconds must be > 0, got {self.poll_seconds}")

        if self.wait_timeout <= 0:
            errors.append(f"wait_timeout must be > 0, got {self.wait_timeout}")

        if errors:
            from stackops.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    def with_updates(self, **kwargs) -> "RemoteConfig":
        return replace(self, **kwargs)
