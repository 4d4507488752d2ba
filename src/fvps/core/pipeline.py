"""Staged, idempotent pipeline execution.

Each Stage has three phases:

1. is_satisfied(): a read-only query of remote state. If the goal
   already holds the stage is skipped and nothing else runs.
2. apply(): the mutating action.
3. verify(): an independent re-query of remote state, always run after
   apply(). A stage only counts as done when verification passes.

Failures of critical stages abort the run; failures of non-critical
stages are recorded as warnings and the run continues. Stage order is
whatever the caller supplies.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

from fvps.core.audit import AuditEventType, AuditLogger, get_audit_logger
from fvps.core.config import ProvisionConfig
from fvps.core.exceptions import (
    ActionFailure,
    ConfigError,
    ConnectivityError,
    FVPSError,
    IdempotencyCheckError,
    StageError,
    VerificationFailure,
)
from fvps.core.output import Console, console
from fvps.core.remote import Command, CommandResult, RemoteSession
from fvps.core.vault import CredentialVault


Connector = Callable[..., RemoteSession]


@dataclass
class Verification:
    """Outcome of a stage's post-condition check."""
    passed: bool
    expected: str = ""
    observed: str = ""


class StageState(Enum):
    """Lifecycle of one stage within a run."""
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    VERIFIED = "verified"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    StageState.PENDING: {StageState.SKIPPED, StageState.RUNNING},
    StageState.RUNNING: {StageState.VERIFIED, StageState.FAILED},
}


@dataclass
class StageRecord:
    """The outcome of one stage in a PipelineRun."""
    name: str
    critical: bool
    state: StageState = StageState.PENDING
    error: Optional[FVPSError] = None

    def advance(self, new_state: StageState) -> None:
        """Move to `new_state`, refusing transitions the lifecycle forbids."""
        if new_state not in ALLOWED_TRANSITIONS.get(self.state, set()):
            raise RuntimeError(
                f"Invalid stage transition for {self.name}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    @property
    def is_warning(self) -> bool:
        """A failed non-critical stage."""
        return self.state is StageState.FAILED and not self.critical


@dataclass
class PipelineRun:
    """Ordered stage outcomes for one invocation."""
    group: str
    target: str
    records: list[StageRecord] = field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[FVPSError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def outcomes(self) -> list[tuple[str, StageState]]:
        return [(record.name, record.state) for record in self.records]

    @property
    def warnings(self) -> list[StageRecord]:
        return [record for record in self.records if record.is_warning]

    def record(self, name: str) -> StageRecord:
        for record in self.records:
            if record.name == name:
                return record
        raise KeyError(name)


def connect(
    config: ProvisionConfig,
    *,
    port: int,
    user: str,
    connector: Connector = RemoteSession.open,
    output: Console = console,
) -> RemoteSession:
    """Open a session to the configured target and probe it.

    Raises:
        ConnectivityError: If the session cannot be opened or probed
    """
    session = connector(
        config.server.ip_address,
        port,
        user,
        config.ssh.key_path,
        timeout=config.ssh.connect_timeout,
        known_hosts=config.ssh.known_hosts,
        output=output,
    )
    try:
        session.probe()
    except ConnectivityError:
        session.close()
        raise
    output.verbose(f"Connected to {session.target}")
    return session


class StageContext:
    """Everything a stage needs: config, the current session and the vault."""

    def __init__(
        self,
        config: ProvisionConfig,
        session: RemoteSession,
        *,
        output: Console = console,
        connector: Connector = RemoteSession.open,
        vault: Optional[CredentialVault] = None,
    ) -> None:
        self.config = config
        self.session = session
        self.console = output
        self.connector = connector
        self.vault = vault or CredentialVault(config, session, output=output)
        # apt-get update runs at most once per run
        self.package_lists_updated = False

    def reopen(self, *, port: Optional[int] = None, user: Optional[str] = None) -> RemoteSession:
        """Close the current session and open and probe a new one.

        Used after a stage changes the listening port or login user; the
        old session is never reused with stale parameters.
        """
        port = port or self.session.port
        user = user or self.session.user
        self.session.close()
        self.session = connect(
            self.config,
            port=port,
            user=user,
            connector=self.connector,
            output=self.console,
        )
        self.vault.session = self.session
        return self.session


class Stage:
    """One named unit of provisioning work.

    Subclasses set `name`, `description` and `required_fields` and
    implement the three phases. Criticality is chosen where the stage
    list is built.
    """

    name: str = ""
    description: str = ""
    required_fields: tuple[str, ...] = ()

    def __init__(self, *, critical: bool = True) -> None:
        self.critical = critical

    def __repr__(self) -> str:
        return f"{type(self).__name__}(critical={self.critical})"

    def is_satisfied(self, ctx: StageContext) -> bool:
        raise NotImplementedError

    def apply(self, ctx: StageContext) -> None:
        raise NotImplementedError

    def verify(self, ctx: StageContext) -> Verification:
        raise NotImplementedError

    # Helpers for subclasses
    def query(
        self,
        ctx: StageContext,
        command: Command,
        *,
        ok: Sequence[int] = (0,),
        sudo: bool = False,
        as_user: Optional[str] = None,
        input: Optional[str] = None,
        sensitive: bool = False,
    ) -> CommandResult:
        """Run a read-only command whose exit code must be one of `ok`.

        Raises:
            IdempotencyCheckError: If the command itself fails
        """
        result = ctx.session.run(
            command,
            sudo=sudo,
            as_user=as_user,
            input=input,
            sensitive=sensitive,
        )
        if result.exit_code not in ok:
            raise IdempotencyCheckError(
                f"State query failed in {self.name}: {result.command}",
                stage=self.name,
                details=[f"Exit code: {result.exit_code}", result.stderr.strip()],
            )
        return result

    def fail(self, message: str, *, hint: Optional[str] = None, details: Optional[list[str]] = None) -> ActionFailure:
        return ActionFailure(message, stage=self.name, hint=hint, details=details)


class PipelineRunner:
    """Runs an ordered list of stages over one session."""

    def __init__(
        self,
        *,
        output: Console = console,
        audit: Optional[AuditLogger] = None,
        connector: Connector = RemoteSession.open,
    ) -> None:
        self.console = output
        self.audit = audit or get_audit_logger()
        self.connector = connector

    def run(
        self,
        config: ProvisionConfig,
        session: RemoteSession,
        stages: Sequence[Stage],
        *,
        group: str = "pipeline",
    ) -> PipelineRun:
        """Execute `stages` in order.

        The runner takes ownership of `session` (and of any session a
        stage reopens) and closes it before returning.

        Raises:
            ConfigError: If a stage's required configuration is empty
            ConnectivityError: If the initial probe fails
        """
        ctx = StageContext(config, session, output=self.console, connector=self.connector)
        run = PipelineRun(
            group=group,
            target=config.server.ip_address,
            records=[StageRecord(name=stage.name, critical=stage.critical) for stage in stages],
        )
        self.audit.log_run_start(group, run.target)

        try:
            ctx.session.probe()
            for stage, record in zip(stages, run.records):
                self._run_stage(ctx, stage, record)
                if record.state is StageState.FAILED and (
                    stage.critical or isinstance(record.error, ConnectivityError)
                ):
                    run.failed_stage = stage.name
                    run.error = record.error
                    break
        except FVPSError as e:
            run.error = e
            raise
        finally:
            ctx.session.close()
            self.audit.log_run_end(group, run.target, run.success, run.failed_stage)

        return run

    def _run_stage(self, ctx: StageContext, stage: Stage, record: StageRecord) -> None:
        missing = ctx.config.missing_fields(stage.required_fields)
        if missing:
            raise ConfigError(
                f"Stage {stage.name} requires: {', '.join(missing)}",
                hint="Set the missing values in config.yml",
            )

        self.console.stage_started(stage.name, stage.description)

        try:
            satisfied = stage.is_satisfied(ctx)
        except ConnectivityError as e:
            self._fail(ctx, stage, record, e)
            return
        except IdempotencyCheckError as e:
            e.stage = e.stage or stage.name
            self._fail(ctx, stage, record, e)
            return
        except FVPSError as e:
            self._fail(ctx, stage, record, IdempotencyCheckError(
                f"State check failed in {stage.name}: {e.message}",
                stage=stage.name,
                hint=e.hint,
                details=e.details,
            ))
            return

        if satisfied:
            record.advance(StageState.SKIPPED)
            self.console.stage_skipped(stage.name)
            self.audit.log_stage(AuditEventType.STAGE_SKIPPED, stage.name, ctx.config.server.ip_address)
            return

        record.advance(StageState.RUNNING)

        try:
            stage.apply(ctx)
        except ConnectivityError as e:
            self._fail(ctx, stage, record, e)
            return
        except ActionFailure as e:
            e.stage = e.stage or stage.name
            self._fail(ctx, stage, record, e)
            return
        except FVPSError as e:
            self._fail(ctx, stage, record, ActionFailure(
                f"{stage.name} failed: {e.message}",
                stage=stage.name,
                hint=e.hint,
                details=e.details,
            ))
            return

        try:
            verification = stage.verify(ctx)
        except ConnectivityError as e:
            self._fail(ctx, stage, record, e)
            return
        except FVPSError as e:
            self._fail(ctx, stage, record, VerificationFailure(
                f"Verification of {stage.name} could not complete: {e.message}",
                stage=stage.name,
                details=e.details,
            ))
            return

        if not verification.passed:
            self._fail(ctx, stage, record, VerificationFailure(
                f"Verification of {stage.name} failed",
                stage=stage.name,
                expected=verification.expected,
                observed=verification.observed,
            ))
            return

        record.advance(StageState.VERIFIED)
        self.console.stage_done(stage.name)
        self.audit.log_stage(AuditEventType.STAGE_VERIFIED, stage.name, ctx.config.server.ip_address)

    def _fail(self, ctx: StageContext, stage: Stage, record: StageRecord, error: FVPSError) -> None:
        # A failed state query never entered the action phase
        if record.state is StageState.PENDING:
            record.advance(StageState.RUNNING)
        record.advance(StageState.FAILED)
        record.error = error
        if isinstance(error, StageError):
            error.stage = error.stage or stage.name

        self.console.stage_failed(stage.name, error.message, critical=stage.critical)

        self.audit.log_stage(
            AuditEventType.STAGE_FAILED,
            stage.name,
            ctx.config.server.ip_address,
            critical=stage.critical,
            error=error.message,
        )

    def show_summary(self, run: PipelineRun) -> None:
        """Print a per-stage result table."""
        labels = {
            StageState.PENDING: "[dim]not run[/dim]",
            StageState.SKIPPED: "[dim]skipped[/dim]",
            StageState.VERIFIED: "[green]done[/green]",
        }
        rows = []
        for record in run.records:
            if record.state is StageState.FAILED:
                label = "[yellow]warning[/yellow]" if record.is_warning else "[red]failed[/red]"
            else:
                label = labels.get(record.state, record.state.value)
            rows.append([record.name, label, "yes" if record.critical else "no"])
        self.console.table(f"{run.group} on {run.target}", ["Stage", "Result", "Critical"], rows)
