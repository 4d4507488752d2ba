"""Dependency installation for a Frappe bench.

Runs as the application user on the hardened port. Package commands
are non-interactive and tried quietly first, then again with full
output when the quiet attempt fails.
"""

import re
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Generator, Optional, Sequence

from fvps.core.config import ProvisionConfig
from fvps.core.exceptions import NotFoundError
from fvps.core.pipeline import Stage, StageContext, Verification
from fvps.core.remote import CommandResult, CommandVariant
from fvps.core.templates import render
from fvps.core.validation import generate_password


ESSENTIAL_PACKAGES = (
    "git",
    "software-properties-common",
    "python-is-python3",
    "python3-pip",
    "python3-venv",
    "curl",
    "wget",
    "build-essential",
    "pkg-config",
)
WKHTMLTOPDF_DEPENDENCIES = ("fontconfig", "libxext6", "libxrender1", "xfonts-75dpi", "xfonts-base")
WKHTMLTOPDF_URL = (
    "https://github.com/wkhtmltopdf/packaging/releases/download/"
    "0.12.6.1-3/wkhtmltox_0.12.6.1-3.jammy_amd64.deb"
)
MARIADB_PACKAGES = ("mariadb-server", "mariadb-client", "libmariadb-dev")
MARIADB_REPO_SETUP = "https://downloads.mariadb.com/MariaDB/mariadb_repo_setup"
MARIADB_CONFIG = "/etc/mysql/mariadb.conf.d/erpnext.cnf"
MARIADB_OVERRIDE_DIR = "/etc/systemd/system/mariadb.service.d"
MARIADB_OVERRIDE = f"{MARIADB_OVERRIDE_DIR}/override.conf"
NVM_VERSION = "v0.39.4"
COMPLETION_MARKER = "frappe_dependencies_completed.txt"
LOCAL_BIN_EXPORT = 'export PATH="$HOME/.local/bin:$PATH"'

# Prefix for scripts that need node, npm or yarn from nvm
NVM = 'export NVM_DIR="$HOME/.nvm"; [ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"; '

# 68.5% of physical memory
BUFFER_POOL_PERMILLE = 685


def apt(ctx: StageContext, *args: str, description: str) -> CommandResult:
    """Run apt-get non-interactively: quiet first, verbose on failure."""
    base = [
        "env", "DEBIAN_FRONTEND=noninteractive",
        "apt-get",
        "-o", "Dpkg::Options::=--force-confdef",
        "-o", "Dpkg::Options::=--force-confold",
    ]
    return ctx.session.run_variants(
        [
            CommandVariant([*base, "-qq", *args], label="quiet", sudo=True),
            CommandVariant([*base, *args], label="verbose", sudo=True),
        ],
        description,
    )


def refresh_package_lists(ctx: StageContext) -> None:
    """Run apt-get update unless this run already did."""
    if not ctx.package_lists_updated:
        apt(ctx, "update", description="apt-get update")
        ctx.package_lists_updated = True


def apt_install(ctx: StageContext, *packages: str, description: Optional[str] = None) -> CommandResult:
    """Install `packages` against fresh package lists."""
    refresh_package_lists(ctx)
    return apt(ctx, "install", "-y", *packages, description=description or f"install {', '.join(packages)}")


def missing_packages(stage: Stage, ctx: StageContext, packages: Sequence[str]) -> list[str]:
    """Return the packages from `packages` that are not installed."""
    result = stage.query(
        ctx,
        ["dpkg-query", "-W", "-f=${Package} ${Status}\\n", *packages],
        ok=(0, 1),
    )
    installed = set()
    for line in result.stdout.splitlines():
        name, _, status = line.partition(" ")
        if status.strip() == "install ok installed":
            installed.add(name.split(":")[0])
    return [package for package in packages if package not in installed]


def sql_literal(value: str) -> str:
    """Escape a value for a single-quoted MariaDB string literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def option_value(value: str) -> str:
    """Quote a value for a MySQL option file; `#` would otherwise start a comment."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


@contextmanager
def mariadb_client(ctx: StageContext, password: str) -> Generator[list[str], None, None]:
    """Yield a `mariadb` argv prefix authenticated as root.

    The password travels in a scratch option file, never on the
    command line.
    """
    options = f"[client]\nuser=root\npassword={option_value(password)}\n"
    with ctx.session.scratch_file(options) as path:
        yield ["mariadb", f"--defaults-extra-file={path}"]


def db_root_password(ctx: StageContext) -> str:
    """The MariaDB root password persisted by the deps group."""
    secret = ctx.vault.ensure("db_root")
    if secret.generated:
        raise NotFoundError(
            "MariaDB root password not found",
            remote_path=secret.remote_path,
            hint="Run `fvps deps` first",
        )
    return secret.value


class SystemUpdate(Stage):
    name = "system-update"
    description = "Update package lists and upgrade the system"

    def _pending(self, ctx: StageContext) -> bool:
        result = self.query(ctx, ["apt-get", "-s", "upgrade"])
        return not re.search(r"^0 upgraded, 0 newly installed", result.stdout, re.MULTILINE)

    def is_satisfied(self, ctx: StageContext) -> bool:
        return not self._pending(ctx)

    def apply(self, ctx: StageContext) -> None:
        refresh_package_lists(ctx)
        apt(ctx, "upgrade", "-y", description="apt-get upgrade")

    def verify(self, ctx: StageContext) -> Verification:
        pending = self._pending(ctx)
        return Verification(
            passed=not pending,
            expected="no pending upgrades",
            observed="upgrades pending" if pending else "up to date",
        )


class PackageStage(Stage):
    """A stage satisfied once a fixed set of packages is installed."""

    packages: tuple[str, ...] = ()

    def is_satisfied(self, ctx: StageContext) -> bool:
        return not missing_packages(self, ctx, self.packages)

    def apply(self, ctx: StageContext) -> None:
        apt_install(ctx, *self.packages)

    def verify(self, ctx: StageContext) -> Verification:
        missing = missing_packages(self, ctx, self.packages)
        return Verification(
            passed=not missing,
            expected="installed: " + " ".join(self.packages),
            observed="missing: " + " ".join(missing) if missing else "all installed",
        )


class EssentialPackages(PackageStage):
    name = "essential-packages"
    description = "Install build tools, git and Python"
    packages = ESSENTIAL_PACKAGES


class PythonTooling(Stage):
    name = "python-tooling"
    description = "Check pip and venv for the default python"

    def _missing(self, ctx: StageContext) -> list[str]:
        missing = []
        for module in ("pip", "venv"):
            result = self.query(ctx, ["python", "-m", module, "--help"], ok=(0, 1, 2, 127))
            if not result.success:
                missing.append(module)
        return missing

    def is_satisfied(self, ctx: StageContext) -> bool:
        return not self._missing(ctx)

    def apply(self, ctx: StageContext) -> None:
        apt_install(
            ctx, "python-is-python3", "python3-pip", "python3-venv", description="install python tooling"
        )

    def verify(self, ctx: StageContext) -> Verification:
        missing = self._missing(ctx)
        return Verification(
            passed=not missing,
            expected="python -m pip and python -m venv available",
            observed=f"missing: {', '.join(missing)}" if missing else "available",
        )


class Redis(Stage):
    name = "redis"
    description = "Install Redis with the system service disabled"

    def _state(self, ctx: StageContext) -> tuple[bool, str, str]:
        installed = not missing_packages(self, ctx, ["redis-server"])
        enabled = self.query(ctx, ["systemctl", "is-enabled", "redis-server"], ok=(0, 1, 4))
        active = self.query(ctx, ["systemctl", "is-active", "redis-server"], ok=(0, 3, 4))
        return installed, enabled.stdout.strip() or "unknown", active.stdout.strip() or "unknown"

    @staticmethod
    def _ok(installed: bool, enabled: str, active: str) -> bool:
        # bench starts its own redis instances
        return installed and enabled != "enabled" and active != "active"

    def is_satisfied(self, ctx: StageContext) -> bool:
        return self._ok(*self._state(ctx))

    def apply(self, ctx: StageContext) -> None:
        apt_install(ctx, "redis-server")
        ctx.session.run(["systemctl", "stop", "redis-server"], sudo=True, check=True)
        ctx.session.run(["systemctl", "disable", "redis-server"], sudo=True, check=True)

    def verify(self, ctx: StageContext) -> Verification:
        installed, enabled, active = self._state(ctx)
        return Verification(
            passed=self._ok(installed, enabled, active),
            expected="redis-server installed, service disabled and stopped",
            observed=f"installed: {installed}, {enabled}, {active}",
        )


class Wkhtmltopdf(Stage):
    name = "wkhtmltopdf"
    description = "Install wkhtmltopdf from the official package"

    def _version(self, ctx: StageContext) -> Optional[str]:
        result = self.query(ctx, ["wkhtmltopdf", "--version"], ok=(0, 1, 127))
        return result.stdout.strip() if result.success else None

    def is_satisfied(self, ctx: StageContext) -> bool:
        return self._version(ctx) is not None

    def apply(self, ctx: StageContext) -> None:
        apt_install(ctx, *WKHTMLTOPDF_DEPENDENCIES, description="install wkhtmltopdf dependencies")

        deb = "/tmp/" + WKHTMLTOPDF_URL.rsplit("/", 1)[-1]
        ctx.session.run(["wget", "-q", "-O", deb, WKHTMLTOPDF_URL], check=True, description="download wkhtmltopdf")
        try:
            # dpkg may stop on unmet dependencies; apt-get -f resolves them
            ctx.session.run(["env", "DEBIAN_FRONTEND=noninteractive", "dpkg", "-i", deb], sudo=True)
            apt(ctx, "install", "-f", "-y", description="complete wkhtmltopdf installation")
        finally:
            ctx.session.run(["rm", "-f", deb])

    def verify(self, ctx: StageContext) -> Verification:
        version = self._version(ctx)
        return Verification(
            passed=version is not None,
            expected="wkhtmltopdf on PATH",
            observed=version or "not found",
        )


class NodeJS(Stage):
    name = "nodejs"
    description = "Install Node.js through nvm"
    required_fields = ("frappe.node_version",)

    def _version(self, ctx: StageContext) -> str:
        result = self.query(
            ctx, NVM + "node --version", as_user=ctx.config.frappe.username, ok=(0, 1, 3, 127)
        )
        return result.stdout.strip() if result.success else ""

    def _matches(self, ctx: StageContext, version: str) -> bool:
        return version.startswith(f"v{ctx.config.frappe.node_version}.")

    def is_satisfied(self, ctx: StageContext) -> bool:
        return self._matches(ctx, self._version(ctx))

    def apply(self, ctx: StageContext) -> None:
        user = ctx.config.frappe.username
        node = ctx.config.frappe.node_version
        ctx.session.run(
            "set -o pipefail; "
            f"curl -fsSL https://raw.githubusercontent.com/nvm-sh/nvm/{NVM_VERSION}/install.sh | bash",
            as_user=user,
            check=True,
            description="install nvm",
        )
        ctx.session.run(
            NVM + f"nvm install {node} && nvm alias default {node}",
            as_user=user,
            check=True,
            description=f"install Node.js {node}",
        )

    def verify(self, ctx: StageContext) -> Verification:
        version = self._version(ctx)
        return Verification(
            passed=self._matches(ctx, version),
            expected=f"node v{ctx.config.frappe.node_version}.x",
            observed=version or "node not found",
        )


class Yarn(Stage):
    name = "yarn"
    description = "Install Yarn"

    def _version(self, ctx: StageContext) -> str:
        result = self.query(
            ctx, NVM + "yarn --version", as_user=ctx.config.frappe.username, ok=(0, 1, 127)
        )
        return result.stdout.strip() if result.success else ""

    def is_satisfied(self, ctx: StageContext) -> bool:
        return bool(self._version(ctx))

    def apply(self, ctx: StageContext) -> None:
        ctx.session.run(
            NVM + "npm install -g yarn --silent --no-fund --no-audit",
            as_user=ctx.config.frappe.username,
            check=True,
            description="install yarn",
        )

    def verify(self, ctx: StageContext) -> Verification:
        version = self._version(ctx)
        return Verification(passed=bool(version), expected="yarn on PATH", observed=version or "not found")


class MariaDBInstall(Stage):
    name = "mariadb-install"
    description = "Install MariaDB from the upstream repository"
    required_fields = ("database.mariadb_version",)

    def _problems(self, ctx: StageContext) -> list[str]:
        version = ctx.config.database.mariadb_version
        problems = [f"{package} missing" for package in missing_packages(self, ctx, MARIADB_PACKAGES)]
        if problems:
            return problems

        reported = self.query(ctx, ["mariadb", "--version"]).stdout
        if not re.search(rf"\b{re.escape(version)}\.\d+", reported):
            problems.append(f"version {reported.strip() or 'unknown'}")
        active = self.query(ctx, ["systemctl", "is-active", "mariadb"], ok=(0, 3, 4)).stdout.strip()
        if active != "active":
            problems.append(f"service {active or 'unknown'}")
        enabled = self.query(ctx, ["systemctl", "is-enabled", "mariadb"], ok=(0, 1, 4)).stdout.strip()
        if enabled != "enabled":
            problems.append(f"service {enabled or 'not enabled'}")
        return problems

    def is_satisfied(self, ctx: StageContext) -> bool:
        return not self._problems(ctx)

    def apply(self, ctx: StageContext) -> None:
        version = ctx.config.database.mariadb_version
        ctx.session.run(
            "set -o pipefail; "
            f"curl -LsS {MARIADB_REPO_SETUP} | bash -s -- --mariadb-server-version={version}",
            sudo=True,
            check=True,
            description="configure the MariaDB repository",
        )
        # the new repository needs its own index
        apt(ctx, "update", description="apt-get update")
        ctx.package_lists_updated = True
        apt_install(ctx, "libmariadb-dev")
        apt_install(ctx, "mariadb-server", "mariadb-client", description="install MariaDB")
        ctx.session.run(["systemctl", "start", "mariadb"], sudo=True, check=True)
        ctx.session.run(["systemctl", "enable", "mariadb"], sudo=True, check=True)

    def verify(self, ctx: StageContext) -> Verification:
        problems = self._problems(ctx)
        libs = self.query(ctx, ["pkg-config", "--exists", "libmariadb"], ok=(0, 1))
        if not libs.success:
            problems.append("libmariadb not found by pkg-config")
        return Verification(
            passed=not problems,
            expected=f"MariaDB {ctx.config.database.mariadb_version} installed, running and enabled",
            observed="; ".join(problems) or "ok",
        )


class MariaDBSecure(Stage):
    name = "mariadb-secure"
    description = "Set the MariaDB root password and remove test accounts"

    def _can_login(self, ctx: StageContext, password: str) -> bool:
        with mariadb_client(ctx, password) as client:
            result = ctx.session.run([*client, "-e", "SELECT 1"])
        return result.success

    def _persisted_and_working(self, ctx: StageContext) -> bool:
        secret = ctx.vault.ensure("db_root")
        if secret.generated:
            return False
        try:
            stored = ctx.vault.retrieve(secret.remote_path, secret.label)
        except NotFoundError:
            return False
        return stored.value == secret.value and self._can_login(ctx, secret.value)

    def is_satisfied(self, ctx: StageContext) -> bool:
        return self._persisted_and_working(ctx)

    def apply(self, ctx: StageContext) -> None:
        secret = ctx.vault.ensure("db_root", generator=lambda: generate_password(32))
        # Persist before the password changes so it is never lost
        ctx.vault.persist(secret)

        sql = render("secure_installation.sql.j2", password_literal=sql_literal(secret.value))
        with ExitStack() as stack:
            script = stack.enter_context(ctx.session.scratch_file(sql))
            variants = [
                CommandVariant(f"mariadb < {script}", label="sudo mariadb", sudo=True),
                CommandVariant(f"mariadb -u root < {script}", label="mariadb -u root"),
            ]
            if not secret.generated:
                # Root may already have this password from an earlier run
                client = stack.enter_context(mariadb_client(ctx, secret.value))
                variants.append(CommandVariant(
                    f"{' '.join(client)} < {script}",
                    label="mariadb with stored password",
                ))
            ctx.session.run_variants(variants, "Securing MariaDB")

    def verify(self, ctx: StageContext) -> Verification:
        working = self._persisted_and_working(ctx)
        return Verification(
            passed=working,
            expected="root login with the persisted password",
            observed="login succeeded" if working else "login failed or password file missing",
        )


class MariaDBConfig(Stage):
    name = "mariadb-config"
    description = "Apply Frappe settings and service limits to MariaDB"

    def _rendered(self, ctx: StageContext) -> tuple[str, str]:
        memory = self.query(ctx, ["free", "-m"]).stdout
        match = re.search(r"^Mem:\s+(\d+)", memory, re.MULTILINE)
        if not match:
            raise self.fail("Cannot determine total memory", details=[memory.strip()])
        buffer_pool_mb = int(match.group(1)) * BUFFER_POOL_PERMILLE // 1000
        return (
            render("erpnext.cnf.j2", buffer_pool_mb=buffer_pool_mb),
            render("mariadb-override.conf.j2"),
        )

    def _file_matches(self, ctx: StageContext, path: str, content: str) -> bool:
        current = self.query(ctx, ["cat", path], sudo=True, ok=(0, 1))
        return current.success and current.stdout == content

    def _charset(self, ctx: StageContext) -> str:
        with mariadb_client(ctx, db_root_password(ctx)) as client:
            result = ctx.session.run(
                [*client, "-N", "-B", "-e", "SHOW VARIABLES LIKE 'character_set_server'"]
            )
        fields = result.stdout.split()
        return fields[1] if result.success and len(fields) > 1 else "unknown"

    def _problems(self, ctx: StageContext) -> list[str]:
        config, override = self._rendered(ctx)
        problems = []
        if not self._file_matches(ctx, MARIADB_CONFIG, config):
            problems.append(f"{MARIADB_CONFIG} differs")
        if not self._file_matches(ctx, MARIADB_OVERRIDE, override):
            problems.append(f"{MARIADB_OVERRIDE} differs")
        active = self.query(ctx, ["systemctl", "is-active", "mariadb"], ok=(0, 3, 4)).stdout.strip()
        if active != "active":
            problems.append(f"service {active or 'unknown'}")
            return problems
        charset = self._charset(ctx)
        if charset != "utf8mb4":
            problems.append(f"character_set_server {charset}")
        return problems

    def is_satisfied(self, ctx: StageContext) -> bool:
        return not self._problems(ctx)

    def apply(self, ctx: StageContext) -> None:
        config, override = self._rendered(ctx)
        ctx.session.write_file(MARIADB_CONFIG, config, sudo=True, mode="644")
        ctx.session.run(["mkdir", "-p", MARIADB_OVERRIDE_DIR], sudo=True, check=True)
        ctx.session.write_file(MARIADB_OVERRIDE, override, sudo=True, mode="644")
        ctx.session.run(["systemctl", "daemon-reload"], sudo=True, check=True)
        ctx.session.run(["systemctl", "restart", "mariadb"], sudo=True, check=True)

    def verify(self, ctx: StageContext) -> Verification:
        problems = self._problems(ctx)
        return Verification(
            passed=not problems,
            expected="config files in place, service active, character_set_server utf8mb4",
            observed="; ".join(problems) or "ok",
        )


class FrappeBench(Stage):
    name = "frappe-bench"
    description = "Install the bench CLI for the application user"

    def _state(self, ctx: StageContext) -> tuple[str, bool]:
        user = ctx.config.frappe.username
        version = self.query(ctx, LOCAL_BIN_EXPORT + "; bench --version", as_user=user, ok=(0, 1, 127))
        on_path = self.query(
            ctx, ["grep", "-qF", LOCAL_BIN_EXPORT, f"{ctx.config.frappe.home}/.bashrc"],
            as_user=user,
            ok=(0, 1, 2),
        )
        return (version.stdout.strip() if version.success else ""), on_path.success

    def is_satisfied(self, ctx: StageContext) -> bool:
        version, on_path = self._state(ctx)
        return bool(version) and on_path

    def apply(self, ctx: StageContext) -> None:
        user = ctx.config.frappe.username
        pip = ["python", "-m", "pip", "install", "--user"]
        ctx.session.run_variants(
            [
                # pip before 23 does not know --break-system-packages
                CommandVariant([*pip, "--break-system-packages", "frappe-bench"], as_user=user),
                CommandVariant([*pip, "frappe-bench"], as_user=user),
            ],
            "Installing frappe-bench",
        )
        _, on_path = self._state(ctx)
        if not on_path:
            ctx.session.run(
                f"echo '{LOCAL_BIN_EXPORT}' >> ~/.bashrc",
                as_user=user,
                check=True,
            )

    def verify(self, ctx: StageContext) -> Verification:
        version, on_path = self._state(ctx)
        return Verification(
            passed=bool(version) and on_path,
            expected="bench on PATH for the application user",
            observed=f"bench {version or 'not found'}, ~/.local/bin in .bashrc: {on_path}",
        )


class CompletionMarker(Stage):
    name = "completion-marker"
    description = "Record that dependency installation finished"

    def _path(self, ctx: StageContext) -> str:
        return f"{ctx.config.frappe.home}/{COMPLETION_MARKER}"

    def _exists(self, ctx: StageContext) -> bool:
        return self.query(ctx, ["test", "-f", self._path(ctx)], ok=(0, 1)).success

    def is_satisfied(self, ctx: StageContext) -> bool:
        return self._exists(ctx)

    def apply(self, ctx: StageContext) -> None:
        config = ctx.config
        hostname = ctx.session.run(["hostname"]).stdout.strip() or config.server.ip_address
        content = render(
            "dependencies_completed.txt.j2",
            completed_on=datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %Z"),
            hostname=hostname,
            username=config.frappe.username,
            node_version=config.frappe.node_version,
            mariadb_version=config.database.mariadb_version,
            password_file=ctx.vault.path_for("db_root"),
            mariadb_config=MARIADB_CONFIG,
            mariadb_override=MARIADB_OVERRIDE,
        )
        ctx.session.write_file(self._path(ctx), content, sudo=True, owner=config.frappe.username)

    def verify(self, ctx: StageContext) -> Verification:
        exists = self._exists(ctx)
        return Verification(passed=exists, expected=self._path(ctx), observed="present" if exists else "missing")


def build_stages(config: ProvisionConfig) -> list[Stage]:
    """Dependency stages in execution order."""
    return [
        SystemUpdate(critical=False),
        EssentialPackages(critical=True),
        PythonTooling(critical=True),
        Redis(critical=True),
        Wkhtmltopdf(critical=True),
        NodeJS(critical=True),
        Yarn(critical=True),
        MariaDBInstall(critical=True),
        MariaDBSecure(critical=True),
        MariaDBConfig(critical=True),
        FrappeBench(critical=True),
        CompletionMarker(critical=False),
    ]
