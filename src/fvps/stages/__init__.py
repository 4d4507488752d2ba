"""Stage groups: harden, deps and bench.

Each group module provides:
- build_stages(config): the ordered stage list, with criticality set
  explicitly for every entry
- open_session(config, ...): how the group reaches the host
"""

from typing import Callable, Optional, Sequence

from fvps.core.config import ProvisionConfig, require_fields
from fvps.core.output import Console, console
from fvps.core.pipeline import Connector, PipelineRun, PipelineRunner, Stage, connect
from fvps.core.remote import RemoteSession


SessionOpener = Callable[..., RemoteSession]


def open_hardened_session(
    config: ProvisionConfig,
    *,
    connector: Connector = RemoteSession.open,
    output: Console = console,
) -> RemoteSession:
    """Connect as the application user on the hardened SSH port."""
    return connect(
        config,
        port=config.ssh.hardened_port,
        user=config.frappe.username,
        connector=connector,
        output=output,
    )


def execute_group(
    group: str,
    config: ProvisionConfig,
    stages: Sequence[Stage],
    opener: SessionOpener,
    *,
    runner: Optional[PipelineRunner] = None,
    connector: Connector = RemoteSession.open,
    output: Console = console,
) -> PipelineRun:
    """Gate on configuration, connect, run the stages and print a summary.

    Required fields are checked before any connection is attempted.

    Raises:
        ConfigError: If a required field is empty
        ConnectivityError: If the host cannot be reached
        StageError: If a critical stage fails
    """
    require_fields(config, stages)

    runner = runner or PipelineRunner(output=output, connector=connector)
    output.rule(f"fvps {group}: {config.server.ip_address}")

    output.info(f"Connecting to {config.server.ip_address}")
    session = opener(config, connector=connector, output=output)
    run = runner.run(config, session, stages, group=group)
    runner.show_summary(run)

    for record in run.warnings:
        output.warn(f"{record.name} did not complete; see the message above")

    if not run.success:
        raise run.error
    return run
