"""Shared fixtures.

Stages talk to a real RemoteSession whose paramiko client is replaced by
an in-memory host. The host understands the handful of commands the
session itself issues (file writes through stdin, mktemp, test, cat, rm)
and answers everything else from rules registered by the test.
"""

import re
import shlex
from typing import Callable, Optional, Union
from unittest.mock import MagicMock

import pytest

from fvps.core.config import ProvisionConfig
from fvps.core.pipeline import PipelineRunner, StageContext
from fvps.core.remote import RemoteSession


TARGET = "203.0.113.10"

Reply = Union[tuple[int, str, str], Callable[["FakeHost", list[str], Optional[str]], tuple[int, str, str]]]


def strip_privilege(argv: list[str]) -> list[str]:
    """Drop a leading `sudo` or `sudo -H -u USER`."""
    if argv[:3] == ["sudo", "-H", "-u"]:
        return argv[4:]
    if argv[:1] == ["sudo"]:
        return argv[1:]
    return argv


class FakeHost:
    """In-memory stand-in for the provisioned server."""

    def __init__(self) -> None:
        self.files: dict[str, str] = {}
        self.modes: dict[str, str] = {}
        self.owners: dict[str, str] = {}
        self.calls: list[str] = []
        self.connections: list[tuple[str, int, str]] = []
        self.unreachable: set[tuple[int, str]] = set()
        self._rules: list[tuple[re.Pattern, Reply]] = []
        self._temp_counter = 0

    def on(self, pattern: str, reply: Reply) -> None:
        """Answer command lines matching `pattern`; later rules win."""
        self._rules.insert(0, (re.compile(pattern), reply))

    def ran(self, pattern: str) -> list[str]:
        """Command lines issued so far that match `pattern`."""
        return [line for line in self.calls if re.search(pattern, line)]

    def execute(self, line: str, data: Optional[str]) -> tuple[int, str, str]:
        self.calls.append(line)
        argv = strip_privilege(shlex.split(line))
        for pattern, reply in self._rules:
            if pattern.search(line):
                return reply(self, argv, data) if callable(reply) else reply
        return self._builtin(argv, data)

    def _builtin(self, argv: list[str], data: Optional[str]) -> tuple[int, str, str]:
        if argv[:2] == ["bash", "-c"]:
            script = shlex.split(argv[2])
            if script[:2] == ["cat", ">"]:
                self.files[script[2]] = data or ""
                return 0, "", ""
            return 0, "", ""

        command, args = argv[0], argv[1:]
        if command == "echo":
            return 0, " ".join(args) + "\n", ""
        if command == "mktemp":
            self._temp_counter += 1
            path = f"/tmp/fvps.test{self._temp_counter:04d}"
            self.files[path] = ""
            return 0, path + "\n", ""
        if command == "test" and args[0] == "-f":
            return (0, "", "") if args[1] in self.files else (1, "", "")
        if command == "test" and args[0] == "-d":
            prefix = args[1].rstrip("/") + "/"
            found = any(path.startswith(prefix) for path in self.files)
            return (0, "", "") if found else (1, "", "")
        if command == "cat" and len(args) == 1:
            if args[0] in self.files:
                return 0, self.files[args[0]], ""
            return 1, "", f"cat: {args[0]}: No such file or directory\n"
        if command == "rm":
            for path in args:
                self.files.pop(path, None)
            return 0, "", ""
        if command == "chmod" and len(args) == 2:
            self.modes[args[1]] = args[0]
            return 0, "", ""
        if command == "chown" and len(args) == 2:
            self.owners[args[1]] = args[0]
            return 0, "", ""
        return 0, "", ""


class _Exchange:
    """One exec_command call; the reply is computed once stdin is closed."""

    def __init__(self, host: FakeHost, line: str) -> None:
        self.host = host
        self.line = line
        self.input: list[str] = []
        self._result: Optional[tuple[int, str, str]] = None

    @property
    def result(self) -> tuple[int, str, str]:
        if self._result is None:
            data = "".join(self.input) if self.input else None
            self._result = self.host.execute(self.line, data)
        return self._result


class _Channel:
    def __init__(self, exchange: _Exchange) -> None:
        self.exchange = exchange

    def shutdown_write(self) -> None:
        pass

    def recv_exit_status(self) -> int:
        return self.exchange.result[0]


class _Stdin:
    def __init__(self, exchange: _Exchange) -> None:
        self.exchange = exchange
        self.channel = _Channel(exchange)

    def write(self, data: str) -> None:
        self.exchange.input.append(data)

    def flush(self) -> None:
        pass


class _Stream:
    def __init__(self, exchange: _Exchange, index: int) -> None:
        self.exchange = exchange
        self.index = index
        self.channel = _Channel(exchange)

    def read(self) -> bytes:
        return self.exchange.result[self.index].encode()


class FakeClient:
    """Minimal paramiko.SSHClient replacement backed by a FakeHost."""

    def __init__(self, host: FakeHost) -> None:
        self.host = host
        self.closed = False

    def exec_command(self, line: str, timeout: Optional[float] = None):
        exchange = _Exchange(self.host, line)
        return _Stdin(exchange), _Stream(exchange, 1), _Stream(exchange, 2)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def output() -> MagicMock:
    """Console replacement; calls can be asserted on."""
    return MagicMock()


@pytest.fixture
def audit() -> MagicMock:
    return MagicMock()


@pytest.fixture
def connector(host, output):
    """Connector with the RemoteSession.open signature that lands on `host`."""
    from fvps.core.exceptions import ConnectivityError

    def open_session(address, port, user, key=None, *, timeout=10, known_hosts="", output=output):
        if (port, user) in host.unreachable:
            raise ConnectivityError(f"Cannot connect to {user}@{address}:{port}", address=address, port=port, user=user)
        host.connections.append((address, port, user))
        return RemoteSession(FakeClient(host), address, port, user, output=output)

    return open_session


@pytest.fixture
def session(host, output) -> RemoteSession:
    return RemoteSession(FakeClient(host), TARGET, 22, "root", output=output)


@pytest.fixture
def app_session(host, output) -> RemoteSession:
    """Session as the application user on the hardened port."""
    return RemoteSession(FakeClient(host), TARGET, 8520, "app", output=output)


@pytest.fixture
def make_config():
    """Build a ProvisionConfig for TARGET with per-section overrides."""

    def factory(**sections) -> ProvisionConfig:
        server = {"ip_address": TARGET, **sections.pop("server", {})}
        return ProvisionConfig(server=server, **sections)

    return factory


@pytest.fixture
def config(make_config) -> ProvisionConfig:
    return make_config(frappe={"site_name": "erp.example.com"})


@pytest.fixture
def runner(output, audit, connector) -> PipelineRunner:
    return PipelineRunner(output=output, audit=audit, connector=connector)


@pytest.fixture
def make_ctx(output, connector):
    def factory(config: ProvisionConfig, session: RemoteSession) -> StageContext:
        return StageContext(config, session, output=output, connector=connector)

    return factory
