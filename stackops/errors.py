# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for stackops.

These helpers centralize wording for common configuration errors so that
the CLI, the environment loader and the orchestrators present consistent,
actionable messages.
"""


def explain_missing_bucket() -> str:
    """
    Explain that no backup bucket could be determined.
    """

    return (
        "Could not determine backup bucket. "
        "Set the BACKUP_BUCKET environment variable, pass --bucket, "
        "or make sure `terraform output backup_bucket` works on this host."
    )


def explain_missing_instance_id() -> str:
    """
    Explain that the target instance id is unknown.
    """

    return (
        "Could not get instance ID. Run terraform apply first, "
        "or set STACKOPS_INSTANCE_ID."
    )


def explain_invalid_quiesce_mode(value: str | None) -> str:
    """
    Explain that STACKOPS_QUIESCE_MODE is invalid.
    """

    return (
        f"Invalid quiesce mode: {value!r}. "
        "Expected one of: 'pause', 'stop', or 'none'."
    )


def explain_invalid_retention_days(value: str | None) -> str:
    """
    Explain that STACKOPS_RETENTION_DAYS is invalid.
    """

    return (
        f"Invalid STACKOPS_RETENTION_DAYS value: {value!r}. "
        "It must be a positive integer number of days."
    )


def explain_invalid_target_spec(value: str) -> str:
    """
    Explain that a target override entry could not be parsed.
    """

    return (
        f"Invalid target specification: {value!r}. "
        "Use 'short-name' or 'short-name:service[+service...]', "
        "for example 'openwebui-data' or 'caddy-data:caddy'."
    )


def explain_invalid_timestamp(value: str) -> str:
    """
    Explain that a restore timestamp is malformed.
    """

    return (
        f"Invalid backup timestamp: {value!r}. "
        "Expected YYYYMMDD_HHMMSS, for example 20241201_143022."
    )


def explain_missing_tool(tool: str) -> str:
    """
    Explain that a required executable is not on PATH.
    """

    return f"Required command not found: {tool}. Install it or fix PATH before retrying."


def explain_missing_session_plugin() -> str:
    """
    Explain that interactive sessions need the SSM session plugin.
    """

    return (
        "session-manager-plugin is not installed or not in PATH. "
        "See https://docs.aws.amazon.com/systems-manager/latest/userguide/"
        "session-manager-working-with-install-plugin.html"
    )


def explain_unknown_action(value: str, supported: list[str]) -> str:
    """
    Explain that a dispatch action is not supported.
    """

    return (
        f"Unknown action: {value!r}. "
        f"Supported actions: {', '.join(supported)}."
    )


def explain_missing_journal() -> str:
    """
    Explain that run history needs a journal path.
    """

    return (
        "No run journal configured. "
        "Set STACKOPS_JOURNAL or pass --journal to read the run history."
    )
