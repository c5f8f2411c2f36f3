# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Exceptions - Error taxonomy for backup, restore and dispatch.

Fatal errors (configuration, preconditions, store outages) abort a run
before anything destructive happens. Per-target errors (missing volume or
backup object, failed transfer, unsafe archive member) are caught by the
orchestrators, recorded and counted.
"""


class StackOpsError(Exception):
    """Base exception for all stackops errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(StackOpsError):
    """Raised when configuration is invalid."""

    pass


class PreconditionFailed(StackOpsError):
    """Raised when a required tool, directory or setting is missing."""

    pass


class NoBucketConfigured(PreconditionFailed):
    """Raised when no backup bucket was given and none could be discovered."""

    pass


class TargetNotFound(StackOpsError):
    """Raised when a target's volume or backup object does not exist."""

    pass


class ObjectNotFound(TargetNotFound):
    """Raised when an object key is absent from the bucket."""

    pass


class TransferFailed(StackOpsError):
    """Raised when moving an archive to or from the object store fails."""

    pass


class UploadFailed(TransferFailed):
    """Raised when an upload is rejected or interrupted."""

    pass


class StoreUnavailable(StackOpsError):
    """Raised when the object store cannot be reached or listed."""

    pass


class UnsafeArchiveMember(StackOpsError):
    """Raised when an archive member would land outside the extraction root."""

    pass


class CommandError(StackOpsError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        argv: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
    ):
        self.argv = list(argv or [])
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            message,
            details={"argv": self.argv, "returncode": returncode, "stderr": stderr.strip()},
        )


class UnknownAction(StackOpsError):
    """Raised when a dispatch action is not part of the supported set."""

    pass


class JournalError(StackOpsError):
    """Raised when the run journal cannot be read or written."""

    pass


class ArchiveError(StackOpsError):
    """Raised when an archive cannot be written or read."""

    pass


class DispatchError(StackOpsError):
    """Raised when a remote command cannot be sent or does not finish."""

    pass
