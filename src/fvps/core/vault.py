"""Durable handoff of generated secrets through remote files.

A secret produced by one stage group (the MariaDB root password, the
site administrator password) is written to a mode-600 file in the
application user's home so a later, separate invocation can read it
back. Files are plain `Label: value` documents that an operator can
also read by hand.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from fvps.core.config import ProvisionConfig
from fvps.core.exceptions import CredentialError, ExecutionError, NotFoundError
from fvps.core.output import Console, console
from fvps.core.remote import RemoteSession
from fvps.core.templates import render
from fvps.core.validation import generate_password


SECRET_FILE_MODE = "600"


@dataclass(frozen=True)
class SecretSpec:
    """Where and how a known secret is kept."""
    label: str
    filename: str
    config_field: str
    title: str


KNOWN_SECRETS = {
    "db_root": SecretSpec(
        label="MariaDB Root Password",
        filename="mariadb_root_password.txt",
        config_field="database.root_password",
        title="MariaDB Root Credentials",
    ),
    "admin": SecretSpec(
        label="Administrator Password",
        filename="frappe_admin_credentials.txt",
        config_field="frappe.admin_password",
        title="Frappe Administrator Credentials",
    ),
}


@dataclass
class Secret:
    """A named secret and the remote file that holds its durable copy."""
    name: str
    value: str = field(repr=False)
    remote_path: Optional[str] = None
    label: str = ""
    mode: str = SECRET_FILE_MODE
    generated: bool = False


class CredentialVault:
    """Produces, persists and recovers secrets on the remote host.

    Resolution order for ensure():
    1. the value from configuration (file or environment)
    2. the durable copy already on the host
    3. a freshly generated value (generated=True)
    """

    def __init__(
        self,
        config: ProvisionConfig,
        session: RemoteSession,
        *,
        output: Console = console,
    ) -> None:
        self.config = config
        self.session = session
        self.console = output

    def spec(self, name: str) -> SecretSpec:
        try:
            return KNOWN_SECRETS[name]
        except KeyError:
            raise CredentialError(f"Unknown secret: {name}") from None

    def path_for(self, name: str) -> str:
        """Default remote path of a known secret."""
        return f"{self.config.frappe.home}/{self.spec(name).filename}"

    def ensure(
        self,
        name: str,
        generator: Optional[Callable[[], str]] = None,
        remote_path: Optional[str] = None,
    ) -> Secret:
        """Return the secret `name`, generating it only if nothing exists yet."""
        spec = self.spec(name)
        path = remote_path or self.path_for(name)

        configured = self.config.get(spec.config_field)
        if configured:
            self.console.debug(f"Using configured value for {spec.label}")
            return Secret(name=name, value=configured, remote_path=path, label=spec.label)

        try:
            secret = self.retrieve(path, spec.label)
        except NotFoundError:
            pass
        else:
            self.console.verbose(f"Reusing {spec.label} from {path}")
            secret.name = name
            return secret

        value = (generator or generate_password)()
        self.console.verbose(f"Generated new {spec.label}")
        return Secret(
            name=name,
            value=value,
            remote_path=path,
            label=spec.label,
            generated=True,
        )

    def persist(
        self,
        secret: Secret,
        remote_path: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> str:
        """Write the secret document, owned by the application user, mode 600.

        Args:
            secret: Secret to persist
            remote_path: Override for the secret's own path
            extra: Additional `Key: value` lines for the document

        Returns:
            The remote path written

        Raises:
            CredentialError: If the file cannot be written
        """
        path = remote_path or secret.remote_path or self.path_for(secret.name)
        title = KNOWN_SECRETS[secret.name].title if secret.name in KNOWN_SECRETS else secret.label
        content = render(
            "credentials.txt.j2",
            title=title,
            label=secret.label,
            value=secret.value,
            extra=extra or {},
            generated_on=datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %Z"),
        )

        try:
            self.session.write_file(
                path,
                content,
                sudo=True,
                mode=secret.mode,
                owner=self.config.frappe.username,
                sensitive=True,
            )
        except ExecutionError as e:
            raise CredentialError(
                f"Cannot write credential file: {path}",
                details=e.details,
            ) from e

        secret.remote_path = path
        self.console.debug(f"{secret.label} stored at {path}")
        return path

    def retrieve(self, remote_path: str, label: str) -> Secret:
        """Read a persisted secret back.

        Raises:
            NotFoundError: If the file does not exist
            CredentialError: If the file has no `label:` line
        """
        exists = self.session.run(["test", "-f", remote_path], sudo=True)
        if not exists.success:
            raise NotFoundError(
                f"{label} not found at {remote_path}",
                remote_path=remote_path,
            )

        result = self.session.run(["cat", remote_path], sudo=True, sensitive=True)
        if not result.success:
            raise CredentialError(
                f"Cannot read credential file: {remote_path}",
                details=[result.stderr.strip()],
            )

        match = re.search(rf"^{re.escape(label)}:[ \t]*(\S.*?)[ \t]*$", result.stdout, re.MULTILINE)
        if not match:
            raise CredentialError(
                f"Credential file {remote_path} has no '{label}' entry",
                hint="Remove the file and re-run the stage that creates it",
            )

        return Secret(name="", value=match.group(1), remote_path=remote_path, label=label)
