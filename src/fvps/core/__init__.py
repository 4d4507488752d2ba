"""Core framework components for the provisioning CLI."""

from fvps.core.exceptions import (
    FVPSError,
    ConfigError,
    ValidationError,
    ConnectivityError,
    ExecutionError,
    StageError,
    IdempotencyCheckError,
    ActionFailure,
    VerificationFailure,
    NotFoundError,
    CredentialError,
)

from fvps.core.context import RunContext, create_context
from fvps.core.output import console, Console, Verbosity
from fvps.core.config import ProvisionConfig, SecretsConfig, require_fields
from fvps.core.remote import (
    CommandResult,
    CommandVariant,
    RemoteSession,
    background_process,
    forget_host_keys,
)
from fvps.core.vault import CredentialVault, Secret
from fvps.core.audit import AuditLogger, AuditEvent, AuditEventType, AuditResult, get_audit_logger
from fvps.core.pipeline import (
    PipelineRun,
    PipelineRunner,
    Stage,
    StageContext,
    StageState,
    Verification,
    connect,
)

__all__ = [
    # Exceptions
    "FVPSError",
    "ConfigError",
    "ValidationError",
    "ConnectivityError",
    "ExecutionError",
    "StageError",
    "IdempotencyCheckError",
    "ActionFailure",
    "VerificationFailure",
    "NotFoundError",
    "CredentialError",
    # Context
    "RunContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "ProvisionConfig",
    "SecretsConfig",
    "require_fields",
    # Remote
    "CommandResult",
    "CommandVariant",
    "RemoteSession",
    "background_process",
    "forget_host_keys",
    # Vault
    "CredentialVault",
    "Secret",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "get_audit_logger",
    # Pipeline
    "PipelineRun",
    "PipelineRunner",
    "Stage",
    "StageContext",
    "StageState",
    "Verification",
    "connect",
]
