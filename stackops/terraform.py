# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Lookups of infrastructure outputs (bucket name, instance id) through
``terraform output``.
"""

from pathlib import Path

import structlog

from stackops.config import StackOpsConfig
from stackops.errors import explain_missing_bucket
from stackops.exceptions import CommandError, NoBucketConfigured
from stackops.shell import CommandRunner, run_command

logger = structlog.get_logger()


async def terraform_output(
    terraform_dir: Path,
    name: str,
    runner: CommandRunner = run_command,
) -> str | None:
    """
    Read one raw output value; None when terraform or the output is missing.
    """
    try:
        result = await runner(
            ["terraform", f"-chdir={terraform_dir}", "output", "-raw", name],
            check=False,
        )
    except CommandError as e:
        logger.debug("terraform_unavailable", error=str(e))
        return None

    if not result.ok:
        logger.debug("terraform_output_missing", name=name, stderr=result.stderr.strip())
        return None

    value = result.stdout.strip()
    return value or None


async def resolve_bucket(config: StackOpsConfig, runner: CommandRunner = run_command) -> str:
    """
    Explicit bucket, else the ``backup_bucket`` terraform output.

    Raises:
        NoBucketConfigured: If neither yields a value
    """
    if config.bucket:
        return config.bucket

    bucket = await terraform_output(config.terraform_dir, "backup_bucket", runner)
    if not bucket:
        raise NoBucketConfigured(explain_missing_bucket())

    logger.info("bucket_discovered", bucket=bucket)
    return bucket
