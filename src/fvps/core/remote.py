"""Remote command execution over SSH.

Provides:
- RemoteSession: one authenticated paramiko channel to the target host
- Ordered command variants (e.g. elevated first, unelevated second)
- Scoped remote scratch files, removed on every exit path
- Scoped background processes, always stopped on exit
- Cleanup of stale pinned host keys for a rebuilt server
"""

import os
import shlex
import time
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, Optional, Sequence, Union

import paramiko
from rich.markup import escape

from fvps.core.exceptions import (
    ActionFailure,
    ConnectivityError,
    ExecutionError,
    FVPSError,
)
from fvps.core.output import Console, console


# An argv list is quoted with shlex.join; a string is a shell script run
# as one unit through `bash -c`.
Command = Union[Sequence[str], str]

PROBE_SENTINEL = "fvps-probe-ok"


@dataclass
class CommandResult:
    """Result of a remote command execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.exit_code == 0


@dataclass(frozen=True)
class CommandVariant:
    """One way of running a command, tried in order by run_variants()."""
    command: Command
    label: str = ""
    sudo: bool = False
    as_user: Optional[str] = None
    input: Optional[str] = None
    sensitive: bool = False


def render_command(
    command: Command,
    *,
    sudo: bool = False,
    as_user: Optional[str] = None,
) -> str:
    """Render a command into the line handed to the remote shell."""
    if isinstance(command, str):
        argv = ["bash", "-c", command]
    else:
        argv = list(command)

    if as_user:
        argv = ["sudo", "-H", "-u", as_user] + argv
    elif sudo:
        argv = ["sudo"] + argv

    return shlex.join(argv)


class RemoteSession:
    """An open SSH session bound to (address, port, user).

    Usage:
        with RemoteSession.open("203.0.113.10", 22, "root") as session:
            session.probe()
            result = session.run(["id", "app"])
    """

    def __init__(
        self,
        client: paramiko.SSHClient,
        address: str,
        port: int,
        user: str,
        *,
        output: Console = console,
    ) -> None:
        self._client = client
        self.address = address
        self.port = port
        self.user = user
        self.console = output
        self.closed = False

    @classmethod
    def open(
        cls,
        address: str,
        port: int,
        user: str,
        key: Optional[str] = None,
        *,
        timeout: int = 10,
        known_hosts: str = "~/.ssh/known_hosts",
        output: Console = console,
    ) -> "RemoteSession":
        """Open an authenticated session.

        Unknown host keys are accepted and saved to `known_hosts` on first
        use. A key that differs from the pinned one is refused.

        Raises:
            ConnectivityError: If the connection or authentication fails
        """
        target = f"{user}@{address}:{port}"
        output.debug(f"Connecting to {target}")

        client = paramiko.SSHClient()
        hosts_file = _prepare_known_hosts(known_hosts)
        client.load_host_keys(str(hosts_file))
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(
                hostname=address,
                port=port,
                username=user,
                key_filename=os.path.expanduser(key) if key else None,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
            )
        except paramiko.BadHostKeyException as e:
            client.close()
            raise ConnectivityError(
                f"Host key for {address} does not match the pinned key",
                address=address,
                port=port,
                user=user,
                hint=f"If the server was rebuilt, remove its entries from {known_hosts}",
                details=[str(e)],
            ) from e
        except paramiko.AuthenticationException as e:
            client.close()
            raise ConnectivityError(
                f"Authentication failed for {target}",
                address=address,
                port=port,
                user=user,
                hint="Check that your SSH key is authorized for this user",
                details=[str(e)],
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectivityError(
                f"Cannot connect to {target}",
                address=address,
                port=port,
                user=user,
                hint="Check the address, the port and that the server is running",
                details=[str(e)],
            ) from e

        return cls(client, address, port, user, output=output)

    @property
    def target(self) -> str:
        return f"{self.user}@{self.address}:{self.port}"

    def run(
        self,
        command: Command,
        *,
        sudo: bool = False,
        as_user: Optional[str] = None,
        input: Optional[str] = None,
        check: bool = False,
        sensitive: bool = False,
        timeout: Optional[float] = None,
        description: Optional[str] = None,
    ) -> CommandResult:
        """Execute a command on the remote host.

        Args:
            command: argv list, or a shell script string
            sudo: Run elevated
            as_user: Run as another user (via sudo -u)
            input: Text written to the command's stdin
            check: Raise ExecutionError on non-zero exit
            sensitive: Don't log the actual command
            timeout: Channel timeout in seconds
            description: Human-readable description for errors

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If command fails and check=True, or times out
            ConnectivityError: If the session is broken
        """
        if as_user == self.user:
            as_user = None
        line = render_command(command, sudo=sudo, as_user=as_user)
        display = "<sensitive command>" if sensitive else line
        self.console.debug(f"[{self.target}] {escape(display)}")

        spinner = self.console.status(description) if description else nullcontext()
        try:
            with spinner:
                stdin, stdout, stderr = self._client.exec_command(line, timeout=timeout)
                if input is not None:
                    stdin.write(input)
                    stdin.flush()
                stdin.channel.shutdown_write()
                out = stdout.read().decode("utf-8", errors="replace")
                err = stderr.read().decode("utf-8", errors="replace")
                exit_code = stdout.channel.recv_exit_status()
        except TimeoutError as e:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or display}",
                command=display,
            ) from e
        except (paramiko.SSHException, OSError) as e:
            raise ConnectivityError(
                f"Lost connection to {self.target}",
                address=self.address,
                port=self.port,
                user=self.user,
                details=[str(e)],
            ) from e

        result = CommandResult(command=display, exit_code=exit_code, stdout=out, stderr=err)

        if check and not result.success:
            raise ExecutionError(
                f"Command failed: {description or display}",
                command=display,
                return_code=exit_code,
                stderr=err,
            )

        return result

    def probe(self) -> None:
        """Run a non-mutating command to confirm the session works.

        Raises:
            ConnectivityError: If the probe does not echo back
        """
        try:
            result = self.run(["echo", PROBE_SENTINEL])
        except ExecutionError as e:
            raise ConnectivityError(
                f"Connectivity probe timed out on {self.target}",
                address=self.address,
                port=self.port,
                user=self.user,
            ) from e

        if not result.success or PROBE_SENTINEL not in result.stdout:
            raise ConnectivityError(
                f"Connectivity probe failed on {self.target}",
                address=self.address,
                port=self.port,
                user=self.user,
                details=[result.stderr.strip()] if result.stderr.strip() else None,
            )

    def run_variants(
        self,
        variants: Sequence[CommandVariant],
        description: str,
    ) -> CommandResult:
        """Try each variant in order; the first success wins.

        Raises:
            ActionFailure: If every variant fails
        """
        failures = []
        for variant in variants:
            result = self.run(
                variant.command,
                sudo=variant.sudo,
                as_user=variant.as_user,
                input=variant.input,
                sensitive=variant.sensitive,
            )
            if result.success:
                return result
            label = variant.label or result.command
            self.console.debug(f"{description}: variant '{escape(label)}' failed ({result.exit_code})")
            failures.append(f"{label}: exit {result.exit_code} {result.stderr.strip()}".strip())

        raise ActionFailure(
            f"{description} failed with every method tried",
            details=failures,
        )

    def write_file(
        self,
        path: str,
        content: str,
        *,
        sudo: bool = False,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        sensitive: bool = False,
    ) -> None:
        """Write `content` to a remote file through stdin.

        Raises:
            ExecutionError: If any step fails
        """
        quoted = shlex.quote(path)
        self.run(
            f"cat > {quoted}",
            sudo=sudo,
            input=content,
            check=True,
            sensitive=sensitive,
            description=f"write {path}",
        )
        if mode:
            self.run(["chmod", mode, path], sudo=sudo, check=True)
        if owner:
            self.run(["chown", f"{owner}:{owner}", path], sudo=True, check=True)

    @contextmanager
    def scratch_file(self, content: str, *, sudo: bool = False) -> Generator[str, None, None]:
        """Create a mode-600 remote temp file, yield its path, always remove it.

        Removal failures are logged at debug level and swallowed.
        """
        result = self.run(["mktemp", "/tmp/fvps.XXXXXXXX"], sudo=sudo, check=True)
        path = result.stdout.strip()
        try:
            self.run(["chmod", "600", path], sudo=sudo, check=True)
            self.run(
                f"cat > {shlex.quote(path)}",
                sudo=sudo,
                input=content,
                check=True,
                sensitive=True,
            )
            yield path
        finally:
            try:
                removed = self.run(["rm", "-f", path], sudo=sudo)
                if not removed.success:
                    self.console.debug(f"Could not remove scratch file {path}: {removed.stderr.strip()}")
            except FVPSError as e:
                self.console.debug(f"Could not remove scratch file {path}: {e}")

    def close(self) -> None:
        if not self.closed:
            self._client.close()
            self.closed = True
            self.console.debug(f"Closed session {self.target}")

    def __enter__(self) -> "RemoteSession":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


@dataclass
class BackgroundProcess:
    """Handle for a process started by background_process()."""
    pid: int
    command: str
    pattern: str


@contextmanager
def background_process(
    session: RemoteSession,
    command: str,
    *,
    settle: float = 5,
    as_user: Optional[str] = None,
    pattern: Optional[str] = None,
) -> Generator[BackgroundProcess, None, None]:
    """Start a long-lived remote process for the duration of a block.

    The process runs in its own session group so the whole tree can be
    signalled. After `settle` seconds it must still be alive. It is
    stopped on every exit path: process-group TERM first, then
    `pkill -f <pattern>`.

    Raises:
        ActionFailure: If the process cannot be started or dies early
    """
    launcher = (
        f"setsid nohup bash -lc {shlex.quote(command)} "
        f">/dev/null 2>&1 </dev/null & echo $!"
    )
    result = session.run(launcher, as_user=as_user, check=True, description=f"start {command}")

    try:
        pid = int(result.stdout.strip().splitlines()[-1])
    except (ValueError, IndexError) as e:
        raise ActionFailure(
            f"Could not start background process: {command}",
            details=[f"Launcher output: {result.stdout.strip()!r}"],
        ) from e

    process = BackgroundProcess(pid=pid, command=command, pattern=pattern or command)
    session.console.verbose(f"Started background process {pid}: {command}")

    try:
        time.sleep(settle)
        alive = session.run(["kill", "-0", str(pid)], as_user=as_user)
        if not alive.success:
            raise ActionFailure(
                f"Background process exited during startup: {command}",
                hint="Run the command by hand on the server to see its output",
            )
        yield process
    finally:
        _stop_background(session, process, as_user)


def _stop_background(
    session: RemoteSession,
    process: BackgroundProcess,
    as_user: Optional[str],
) -> None:
    try:
        stopped = session.run(["kill", "-TERM", "--", f"-{process.pid}"], as_user=as_user)
        if not stopped.success:
            session.run(["pkill", "-f", process.pattern], as_user=as_user)
        session.console.verbose(f"Stopped background process {process.pid}")
    except FVPSError as e:
        session.console.warn(f"Could not stop background process {process.pid}: {e}")


def _prepare_known_hosts(known_hosts: str) -> Path:
    path = Path(os.path.expanduser(known_hosts))
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    if not path.exists():
        path.touch(mode=0o600)
    return path


def forget_host_keys(known_hosts: str, address: str, ports: Sequence[int]) -> int:
    """Remove pinned host keys for `address` on the given ports.

    Used before hardening a rebuilt server whose keys have changed.

    Returns:
        Number of entries removed
    """
    path = Path(os.path.expanduser(known_hosts))
    if not path.exists():
        return 0

    keys = paramiko.HostKeys()
    keys.load(str(path))

    names = {address if port == 22 else f"[{address}]:{port}" for port in ports}
    removed = 0
    for name in sorted(names):
        while keys.lookup(name) is not None:
            del keys[name]
            removed += 1

    if removed:
        keys.save(str(path))
        console.debug(f"Removed {removed} pinned host key(s) for {address}")
    return removed
