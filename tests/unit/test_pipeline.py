"""Unit tests for stage sequencing, idempotency and verification."""

import pytest
from unittest.mock import MagicMock

from fvps.core.audit import AuditEventType
from fvps.core.exceptions import (
    ActionFailure,
    ConfigError,
    ConnectivityError,
    ExecutionError,
    IdempotencyCheckError,
    VerificationFailure,
)
from fvps.core.pipeline import (
    PipelineRun,
    Stage,
    StageContext,
    StageRecord,
    StageState,
    Verification,
    connect,
)
from fvps.stages import execute_group


class ScriptedStage(Stage):
    """Stage whose phases do what the test tells them."""

    def __init__(
        self,
        name,
        *,
        critical=True,
        satisfied=False,
        verified=True,
        check_error=None,
        apply_error=None,
        required=(),
    ):
        super().__init__(critical=critical)
        self.name = name
        self.description = f"scripted {name}"
        self.required_fields = required
        self.satisfied = satisfied
        self.verified = verified
        self.check_error = check_error
        self.apply_error = apply_error
        self.calls = []

    def is_satisfied(self, ctx):
        self.calls.append("check")
        if self.check_error:
            raise self.check_error
        return self.satisfied

    def apply(self, ctx):
        self.calls.append("apply")
        if self.apply_error:
            raise self.apply_error

    def verify(self, ctx):
        self.calls.append("verify")
        return Verification(passed=self.verified, expected="goal reached", observed="goal missing")


class MarkerStage(Stage):
    """Creates /etc/marker; state is only ever read back from the host."""

    name = "marker"
    description = "Create a marker file"

    def __init__(self, *, apply_works=True, critical=True):
        super().__init__(critical=critical)
        self.apply_works = apply_works

    def _exists(self, ctx):
        return self.query(ctx, ["test", "-f", "/etc/marker"], ok=(0, 1)).success

    def is_satisfied(self, ctx):
        return self._exists(ctx)

    def apply(self, ctx):
        if self.apply_works:
            ctx.session.write_file("/etc/marker", "done\n", sudo=True)

    def verify(self, ctx):
        exists = self._exists(ctx)
        return Verification(passed=exists, expected="/etc/marker", observed="present" if exists else "missing")


class TestStageRecord:
    """Tests for the per-stage state machine."""

    def test_valid_transitions(self):
        """pending -> running -> verified is allowed."""
        record = StageRecord(name="x", critical=True)
        record.advance(StageState.RUNNING)
        record.advance(StageState.VERIFIED)
        assert record.state is StageState.VERIFIED

    def test_skip_from_pending(self):
        """pending -> skipped is allowed."""
        record = StageRecord(name="x", critical=True)
        record.advance(StageState.SKIPPED)
        assert record.state is StageState.SKIPPED

    def test_invalid_transitions(self):
        """Terminal states cannot be left and pending cannot jump to verified."""
        record = StageRecord(name="x", critical=True)
        with pytest.raises(RuntimeError):
            record.advance(StageState.VERIFIED)

        record.advance(StageState.SKIPPED)
        with pytest.raises(RuntimeError):
            record.advance(StageState.RUNNING)

    def test_warning_only_for_non_critical(self):
        """A failed non-critical stage is a warning."""
        record = StageRecord(name="x", critical=False, state=StageState.FAILED)
        assert record.is_warning
        assert not StageRecord(name="y", critical=True, state=StageState.FAILED).is_warning


class TestPipelineRunner:
    """Tests for PipelineRunner.run."""

    def test_satisfied_stage_is_skipped(self, runner, config, session, audit, output):
        """A satisfied stage runs neither action nor verification."""
        stage = ScriptedStage("a", satisfied=True)
        run = runner.run(config, session, [stage])

        assert stage.calls == ["check"]
        assert run.outcomes == [("a", StageState.SKIPPED)]
        assert run.success
        audit.log_stage.assert_called_once_with(AuditEventType.STAGE_SKIPPED, "a", config.server.ip_address)
        output.stage_skipped.assert_called_once_with("a")

    def test_unsatisfied_stage_is_applied_and_verified(self, runner, config, session):
        """Action is always followed by verification."""
        stage = ScriptedStage("a")
        run = runner.run(config, session, [stage])

        assert stage.calls == ["check", "apply", "verify"]
        assert run.record("a").state is StageState.VERIFIED

    def test_critical_failure_stops_run(self, runner, config, session):
        """Stages after a failed critical stage never start."""
        first = ScriptedStage("first")
        broken = ScriptedStage("broken", apply_error=ActionFailure("boom"))
        never = ScriptedStage("never")

        run = runner.run(config, session, [first, broken, never])

        assert run.outcomes == [
            ("first", StageState.VERIFIED),
            ("broken", StageState.FAILED),
            ("never", StageState.PENDING),
        ]
        assert never.calls == []
        assert run.failed_stage == "broken"
        assert isinstance(run.error, ActionFailure)
        assert run.error.stage == "broken"
        assert not run.success

    def test_non_critical_failure_continues(self, runner, config, session, output):
        """A failed non-critical stage is recorded as a warning."""
        soft = ScriptedStage("soft", critical=False, apply_error=ActionFailure("meh"))
        after = ScriptedStage("after")

        run = runner.run(config, session, [soft, after])

        assert run.success
        assert run.record("after").state is StageState.VERIFIED
        assert [record.name for record in run.warnings] == ["soft"]
        assert run.failed_stage is None
        output.stage_failed.assert_called_once_with("soft", "meh", critical=False)

    def test_check_error_is_not_unsatisfied(self, runner, config, session):
        """A failing state query fails the stage without running the action."""
        stage = ScriptedStage("a", check_error=ExecutionError("query exploded", return_code=2))
        run = runner.run(config, session, [stage])

        assert stage.calls == ["check"]
        assert run.record("a").state is StageState.FAILED
        assert isinstance(run.error, IdempotencyCheckError)
        assert "Exit code: 2" in run.error.details

    def test_query_with_unexpected_exit_code(self, runner, config, session, host):
        """Stage.query raises IdempotencyCheckError outside the accepted codes."""
        host.on(r"test -f /etc/marker", (2, "", "test: extra argument"))
        run = runner.run(config, session, [MarkerStage()])

        assert isinstance(run.error, IdempotencyCheckError)
        assert run.error.stage == "marker"
        assert not host.ran(r"cat > /etc/marker")

    def test_apply_error_wrapped_as_action_failure(self, runner, config, session):
        """Command failures during the action keep their details and hint."""
        error = ExecutionError("Command failed: x", return_code=100, stderr="E: locked", hint="wait")
        run = runner.run(config, session, [ScriptedStage("a", apply_error=error)])

        assert isinstance(run.error, ActionFailure)
        assert run.error.hint == "wait"
        assert "Error output: E: locked" in run.error.details

    def test_verification_failure(self, runner, config, session):
        """An action that reports success but leaves the goal unmet fails verification."""
        run = runner.run(config, session, [ScriptedStage("a", verified=False)])

        assert isinstance(run.error, VerificationFailure)
        assert run.error.expected == "goal reached"
        assert run.error.observed == "goal missing"
        assert "Expected: goal reached" in run.error.details

    def test_verification_reads_remote_state(self, runner, config, session):
        """Verification does not trust the action; it re-queries the host."""
        run = runner.run(config, session, [MarkerStage(apply_works=False)])

        assert run.record("marker").state is StageState.FAILED
        assert isinstance(run.error, VerificationFailure)

    def test_idempotent_rerun(self, runner, config, host, connector):
        """The second run over the same host skips and issues only the check."""
        first = runner.run(config, connector(config.server.ip_address, 22, "root"), [MarkerStage()])
        assert first.record("marker").state is StageState.VERIFIED

        host.calls.clear()
        second = runner.run(config, connector(config.server.ip_address, 22, "root"), [MarkerStage()])

        assert second.record("marker").state is StageState.SKIPPED
        assert host.calls == ["echo fvps-probe-ok", "test -f /etc/marker"]

    def test_missing_required_field_raises(self, runner, make_config, session):
        """A stage with an empty required field raises ConfigError."""
        config = make_config()
        stage = ScriptedStage("site", required=("frappe.site_name",))

        with pytest.raises(ConfigError):
            runner.run(config, session, [stage])
        assert stage.calls == []

    def test_probe_failure(self, runner, config, session, host, audit):
        """A failing probe aborts before any stage."""
        host.on(r"fvps-probe-ok", (255, "", "broken pipe"))
        stage = ScriptedStage("a")

        with pytest.raises(ConnectivityError):
            runner.run(config, session, [stage])

        assert stage.calls == []
        audit.log_run_end.assert_called_once_with("pipeline", config.server.ip_address, False, None)

    def test_connectivity_loss_aborts_even_non_critical(self, runner, config, session):
        """A lost session stops the run regardless of criticality."""
        soft = ScriptedStage("soft", critical=False, apply_error=ConnectivityError("gone"))
        after = ScriptedStage("after")

        run = runner.run(config, session, [soft, after])

        assert not run.success
        assert run.failed_stage == "soft"
        assert after.calls == []

    def test_session_closed(self, runner, config, session):
        """The runner closes the session it was given."""
        runner.run(config, session, [ScriptedStage("a", satisfied=True)])
        assert session.closed

    def test_audit_run_events(self, runner, config, session, audit):
        """Run start and end are audited with the group name."""
        runner.run(config, session, [ScriptedStage("a")], group="harden")
        audit.log_run_start.assert_called_once_with("harden", config.server.ip_address)
        audit.log_run_end.assert_called_once_with("harden", config.server.ip_address, True, None)

    def test_summary_table(self, runner, output):
        """The summary lists every stage with its result."""
        run = PipelineRun(group="deps", target="203.0.113.10", records=[
            StageRecord(name="a", critical=True, state=StageState.VERIFIED),
            StageRecord(name="b", critical=False, state=StageState.FAILED),
            StageRecord(name="c", critical=True),
        ])
        runner.show_summary(run)

        title, columns, rows = output.table.call_args[0]
        assert title == "deps on 203.0.113.10"
        assert columns == ["Stage", "Result", "Critical"]
        assert [row[0] for row in rows] == ["a", "b", "c"]
        assert "warning" in rows[1][1]


class TestStageContext:
    """Tests for session replacement."""

    def test_reopen_replaces_session(self, config, session, output, connector, host):
        """reopen closes the old session and probes a new one."""
        ctx = StageContext(config, session, output=output, connector=connector)

        new = ctx.reopen(port=8520, user="app")

        assert session.closed
        assert ctx.session is new
        assert (new.port, new.user) == (8520, "app")
        assert ctx.vault.session is new
        assert host.connections == [(config.server.ip_address, 8520, "app")]

    def test_connect_closes_on_probe_failure(self, config, host, connector):
        """A session whose probe fails is closed before the error propagates."""
        host.on(r"fvps-probe-ok", (0, "", ""))
        opened = []

        def tracking_connector(*args, **kwargs):
            session = connector(*args, **kwargs)
            opened.append(session)
            return session

        with pytest.raises(ConnectivityError):
            connect(config, port=22, user="root", connector=tracking_connector)
        assert opened[0].closed


class TestExecuteGroup:
    """Tests for group execution."""

    def test_config_gate_before_connect(self, make_config, runner, connector, output):
        """Missing required values fail before any connection is opened."""
        opener = MagicMock()
        stage = ScriptedStage("site", required=("frappe.site_name",))

        with pytest.raises(ConfigError):
            execute_group("bench", make_config(), [stage], opener, runner=runner, connector=connector, output=output)
        opener.assert_not_called()

    def test_failed_run_raises(self, config, runner, connector, output, session):
        """The error of the failed critical stage is raised after the summary."""
        broken = ScriptedStage("broken", apply_error=ActionFailure("boom"))

        with pytest.raises(ActionFailure):
            execute_group("deps", config, [broken], lambda *a, **k: session, runner=runner, output=output)
        output.table.assert_called_once()

    def test_success_returns_run(self, config, runner, output, session):
        """A successful run is returned."""
        run = execute_group("deps", config, [ScriptedStage("a")], lambda *a, **k: session, runner=runner, output=output)
        assert run.success
