"""Invocation context for CLI commands.

The RunContext holds the flags that affect output and the location of
the configuration file. The configuration itself is loaded once, on
first access, and handed explicitly to the pipeline.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fvps.core.config import DEFAULT_CONFIG_PATH, ProvisionConfig
from fvps.core.output import Console, Verbosity, console


@dataclass
class RunContext:
    """Context passed from the CLI to the stage groups.

    Attributes:
        verbosity: Output verbosity level (0-3)
        no_color: If True, disable colored output
        config_path: Path to configuration file
    """

    verbosity: int = Verbosity.NORMAL
    no_color: bool = False
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    _config: Optional[ProvisionConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        self._console.configure(verbosity=self.verbosity, no_color=self.no_color)

    @property
    def config(self) -> ProvisionConfig:
        """Get provisioning configuration (loaded on first access)."""
        if self._config is None:
            self._config = ProvisionConfig.load(self.config_path)
        return self._config

    @property
    def console(self) -> Console:
        return self._console


def create_context(
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> RunContext:
    """Create a run context from CLI options.

    Args:
        verbose: Increase verbosity (can be repeated)
        quiet: Suppress non-essential output
        no_color: Disable colored output
        config: Path to configuration file

    Returns:
        Configured run context
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    return RunContext(
        verbosity=verbosity,
        no_color=no_color,
        config_path=config or DEFAULT_CONFIG_PATH,
    )
