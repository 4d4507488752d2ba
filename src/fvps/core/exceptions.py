"""Custom exceptions for the provisioning CLI.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class FVPSError(Exception):
    """Base exception for all provisioning errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigError(FVPSError):
    """Configuration file or settings errors.

    Raised before any remote connection when:
    - Config file not found or unreadable
    - Invalid YAML syntax
    - Target address missing or malformed
    - A field required by a requested stage is empty
    """


class ValidationError(ConfigError):
    """A single configuration value failed validation."""


class ConnectivityError(FVPSError):
    """The remote channel cannot be established or re-established.

    Raised when:
    - TCP connection or authentication fails
    - The pinned host key does not match
    - The non-mutating probe command fails
    """

    def __init__(
        self,
        message: str,
        *,
        address: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.address = address
        self.port = port
        self.user = user


class ExecutionError(FVPSError):
    """A remote command returned an unexpected exit code."""

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class StageError(FVPSError):
    """Base for failures attributed to a single pipeline stage."""

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.stage = stage


class IdempotencyCheckError(StageError):
    """The read-only state probe itself failed.

    Distinct from "not yet satisfied": the orchestrator cannot safely
    decide whether to act.
    """


class ActionFailure(StageError):
    """The mutating step of a stage returned a non-success status."""


class VerificationFailure(StageError):
    """The action appeared to succeed but the post-condition does not hold."""

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        expected: Optional[str] = None,
        observed: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if expected is not None:
            details.append(f"Expected: {expected}")
        if observed is not None:
            details.append(f"Observed: {observed}")
        super().__init__(message, stage=stage, hint=hint, details=details)
        self.expected = expected
        self.observed = observed


class NotFoundError(FVPSError):
    """A persisted secret is absent on the remote host.

    Signals that the stage which produces it has not completed yet.
    """

    def __init__(
        self,
        message: str,
        *,
        remote_path: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.remote_path = remote_path


class CredentialError(FVPSError):
    """Credential management errors.

    Raised when:
    - A credential file exists but holds no value
    - A credential file cannot be written
    """
