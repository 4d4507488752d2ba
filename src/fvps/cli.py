"""Main CLI entry point using Typer.

This module defines the root CLI application, the three stage-group
commands and the configuration helpers. The flagless console scripts
(fvps-harden, fvps-deps, fvps-bench) are thin wrappers around the same
group runner.
"""

from pathlib import Path
from typing import Callable, Optional, Annotated

import typer
from rich.console import Console

from fvps import __version__
from fvps.core.config import DEFAULT_CONFIG_PATH, SecretsConfig, get_example_config
from fvps.core.context import RunContext, create_context
from fvps.core.exceptions import FVPSError
from fvps.core.output import console as app_console
from fvps.core.pipeline import StageState
from fvps.core.remote import RemoteSession
from fvps.stages import SessionOpener, execute_group, open_hardened_session
from fvps.stages import bench, deps, harden


# Create the main Typer app
app = typer.Typer(
    name="fvps",
    help="Frappe VPS provisioning - staged, idempotent server setup over SSH.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Configuration management.",
    no_args_is_help=True,
)

app.add_typer(config_app, name="config")


# Stage list builder and session opener for each group
GROUPS: dict[str, tuple[Callable, SessionOpener]] = {
    "harden": (harden.build_stages, harden.open_session),
    "deps": (deps.build_stages, open_hardened_session),
    "bench": (bench.build_stages, open_hardened_session),
}


# Type aliases for common options
VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"fvps version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Frappe VPS provisioning - staged, idempotent server setup over SSH.

    Run the groups in order. Each one can be re-run safely: stages whose
    goal already holds on the server are skipped.

    [bold]Examples:[/bold]
        fvps config example > config.yml
        fvps harden
        fvps deps -v
        fvps bench --config prod.yml
    """
    pass


def get_context(
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> RunContext:
    """Create run context from CLI options."""
    return create_context(
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )


def handle_error(error: FVPSError) -> None:
    """Handle an FVPSError by printing formatted error and exiting."""
    app_console.report_error(error.message, error.details, error.hint)
    raise typer.Exit(error.exit_code)


def run_group(ctx: RunContext, group: str) -> None:
    """Load configuration and run one stage group against the server."""
    build_stages, opener = GROUPS[group]
    try:
        config = ctx.config
        run = execute_group(
            group,
            config,
            build_stages(config),
            opener,
            connector=RemoteSession.open,
            output=ctx.console,
        )
    except FVPSError as e:
        handle_error(e)
        return

    states = [state for _, state in run.outcomes]
    ctx.console.operation_summary(f"fvps {group}", True, {
        "Server": run.target,
        "Completed": states.count(StageState.VERIFIED),
        "Already satisfied": states.count(StageState.SKIPPED),
        "Warnings": len(run.warnings),
    })


# ============================================================================
# Stage group commands
# ============================================================================

@app.command("harden")
def harden_cmd(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Harden the server and prepare the application user.

    Connects as the administrative user on the initial SSH port (or, on
    a re-run, as the application user on the hardened port) and:
    - Creates the application user with passwordless sudo
    - Copies the administrator's authorized SSH keys
    - Sets the timezone, creates swap and tunes swap sysctls
    - Moves SSH to the hardened port and disables password logins
    """
    run_group(get_context(verbose=verbose, quiet=quiet, no_color=no_color, config=config), "harden")


@app.command("deps")
def deps_cmd(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Install Frappe dependencies.

    Installs system packages, Redis, wkhtmltopdf, Node.js and Yarn,
    MariaDB (secured and tuned) and frappe-bench. The generated MariaDB
    root password is stored on the server for the bench group.
    """
    run_group(get_context(verbose=verbose, quiet=quiet, no_color=no_color, config=config), "deps")


@app.command("bench")
def bench_cmd(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Initialize the bench and create the site.

    [bold]Requires:[/bold] frappe.site_name in the configuration.
    """
    run_group(get_context(verbose=verbose, quiet=quiet, no_color=no_color, config=config), "bench")


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show current configuration.

    Displays the loaded configuration. Secrets are masked.
    """
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)

    try:
        provision_config = ctx.config

        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {ctx.config_path}")
        ctx.console.print()

        ctx.console.yaml(provision_config.to_yaml(), title="Configuration")

        # Show secrets status (not values)
        secrets = SecretsConfig()
        ctx.console.summary("Secrets (from environment)", {
            "FVPS_DB_ROOT_PASSWORD": "Set" if secrets.fvps_db_root_password else "Not set",
            "FVPS_ADMIN_PASSWORD": "Set" if secrets.fvps_admin_password else "Not set",
        })

    except FVPSError as e:
        handle_error(e)


@config_app.command("validate")
def config_validate(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Validate configuration file.

    Checks that the file exists, is valid YAML and that all values pass
    validation. Also reports which groups are missing required values.
    """
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)

    try:
        provision_config = ctx.config
        ctx.console.success(f"Configuration is valid: {ctx.config_path}")

        if ctx.verbosity > 1:
            ctx.console.yaml(provision_config.to_yaml())

        for group, (build_stages, _) in GROUPS.items():
            needed = {name for stage in build_stages(provision_config) for name in stage.required_fields}
            missing = provision_config.missing_fields(sorted(needed))
            if missing:
                ctx.console.warn(f"`fvps {group}` needs: {', '.join(missing)}")

    except FVPSError as e:
        handle_error(e)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print example configuration file.

    Outputs a complete example configuration with comments.
    """
    ctx = get_context(no_color=no_color)
    ctx.console.print(get_example_config(), markup=False, highlight=False)


# ============================================================================
# Flagless console scripts
# ============================================================================

def _group_script(group: str) -> Callable[[], None]:
    def command() -> None:
        run_group(get_context(), group)

    command.__doc__ = f"Run `fvps {group}` with ./{DEFAULT_CONFIG_PATH}."
    return command


def harden_main() -> None:
    typer.run(_group_script("harden"))


def deps_main() -> None:
    typer.run(_group_script("deps"))


def bench_main() -> None:
    typer.run(_group_script("bench"))


# Entry point
if __name__ == "__main__":
    app()
