"""Unit tests for the dependency stages."""

import re
import shlex

import pytest

from fvps.core.exceptions import NotFoundError
from fvps.core.pipeline import StageState
from fvps.stages import deps
from fvps.stages.deps import (
    MARIADB_CONFIG,
    MARIADB_OVERRIDE,
    CompletionMarker,
    EssentialPackages,
    MariaDBConfig,
    MariaDBInstall,
    MariaDBSecure,
    PackageStage,
    SystemUpdate,
    db_root_password,
    mariadb_client,
    option_value,
    sql_literal,
)


DB_FILE = "/home/app/mariadb_root_password.txt"


class PackageHost:
    """dpkg and apt-get on the fake host."""

    def __init__(self, host, installed=(), quiet_fails=False):
        self.installed = set(installed)
        self.quiet_fails = quiet_fails
        host.on(r"^dpkg-query -W", self.query)
        host.on(r"^sudo env DEBIAN_FRONTEND=noninteractive apt-get", self.apt)

    def query(self, host, argv, data):
        lines = [f"{name} install ok installed" for name in argv[3:] if name in self.installed]
        code = 0 if len(lines) == len(argv[3:]) else 1
        return code, "\n".join(lines) + "\n", ""

    def apt(self, host, argv, data):
        if "-qq" in argv and self.quiet_fails:
            return 100, "", "E: Could not get lock /var/lib/dpkg/lock-frontend"
        if "install" in argv:
            self.installed.update(arg for arg in argv[argv.index("install") + 1:] if not arg.startswith("-"))
        return 0, "", ""


class MariaDBHost:
    """A MariaDB server that tracks the root password set through SQL."""

    def __init__(self, host, root_password=None, socket_auth=True):
        self.host = host
        self.root_password = root_password
        self.socket_auth = socket_auth
        self.charset = "utf8mb4"
        host.on(r"^(sudo )?(bash -c .)?mariadb ", self.mariadb)

    def _authenticated(self, client, elevated):
        for arg in client:
            if arg.startswith("--defaults-extra-file="):
                options = self.host.files[arg.split("=", 1)[1]]
                quoted = re.search(r'^password="((?:[^"\\]|\\.)*)"$', options, re.MULTILINE).group(1)
                password = re.sub(r"\\(.)", r"\1", quoted)
                return self.root_password is not None and password == self.root_password
        return elevated and self.socket_auth

    def mariadb(self, host, argv, data):
        elevated = host.calls[-1].startswith("sudo ")
        if argv[:2] == ["bash", "-c"]:
            words = shlex.split(argv[2])
            split = words.index("<")
            client, script = words[:split], host.files[words[split + 1]]
        else:
            client, script = argv, None

        if not self._authenticated(client, elevated):
            return 1, "", "ERROR 1045 (28000): Access denied for user 'root'@'localhost'"

        if script is not None:
            match = re.search(r"IDENTIFIED BY '(.*)'", script)
            self.root_password = match.group(1)
            # ALTER USER replaces unix_socket authentication
            self.socket_auth = False
            return 0, "", ""
        if "SHOW VARIABLES LIKE 'character_set_server'" in client:
            return 0, f"character_set_server\t{self.charset}\n", ""
        return 0, "1\n", ""


class TestHelpers:
    """Tests for module-level helpers."""

    def test_sql_literal(self):
        """Quotes and backslashes are escaped."""
        assert sql_literal("it's") == "it\\'s"
        assert sql_literal("a\\b") == "a\\\\b"
        assert sql_literal("Plain123") == "Plain123"

    def test_option_value(self):
        """Option file values are double-quoted with quotes and backslashes escaped."""
        assert option_value("Plain123") == '"Plain123"'
        assert option_value('a"b\\c') == '"a\\"b\\\\c"'

    def test_mariadb_client_option_file(self, config, app_session, make_ctx, host):
        """A `#` in the password is kept inside the quoted value."""
        with mariadb_client(make_ctx(config, app_session), 'Ab#cd"12') as client:
            path = client[1].split("=", 1)[1]
            assert host.files[path] == '[client]\nuser=root\npassword="Ab#cd\\"12"\n'
        assert path not in host.files

    def test_db_root_password_missing(self, config, app_session, make_ctx):
        """Without the persisted file the bench group cannot proceed."""
        with pytest.raises(NotFoundError) as exc:
            db_root_password(make_ctx(config, app_session))
        assert exc.value.remote_path == DB_FILE
        assert "fvps deps" in exc.value.hint

    def test_db_root_password_persisted(self, config, app_session, make_ctx, host):
        """The persisted value is returned."""
        host.files[DB_FILE] = "MariaDB Root Password: Stored123\n"
        assert db_root_password(make_ctx(config, app_session)) == "Stored123"


class TestPackages:
    """Tests for apt-based stages."""

    def test_installed_packages_skip(self, runner, config, app_session, host):
        """All packages present means nothing is installed."""
        PackageHost(host, installed=deps.ESSENTIAL_PACKAGES)

        run = runner.run(config, app_session, [EssentialPackages()])

        assert run.outcomes == [("essential-packages", StageState.SKIPPED)]
        assert not host.ran(r"apt-get")

    def test_quiet_then_verbose(self, runner, config, app_session, host):
        """A failed quiet apt-get is retried with full output."""
        packages = PackageHost(host, installed={"git"}, quiet_fails=True)

        run = runner.run(config, app_session, [EssentialPackages()])

        assert run.success
        attempts = host.ran(r"apt-get .*install -y git")
        assert len(attempts) == 2
        assert "-qq" in attempts[0]
        assert "-qq" not in attempts[1]
        assert packages.installed >= set(deps.ESSENTIAL_PACKAGES)

    def test_non_interactive(self, runner, config, app_session, host):
        """apt-get never prompts and keeps existing config files."""
        PackageHost(host)
        runner.run(config, app_session, [EssentialPackages()])

        line = host.ran(r"apt-get")[0]
        assert "DEBIAN_FRONTEND=noninteractive" in line
        assert "Dpkg::Options::=--force-confold" in line

    def test_fresh_package_lists_before_install(self, runner, config, app_session, host):
        """A stale cache that shows no upgrades still gets apt-get update before installing."""
        host.on(r"^apt-get -s upgrade$", (0, "0 upgraded, 0 newly installed, 0 to remove\n", ""))
        packages = PackageHost(host)

        run = runner.run(config, app_session, [SystemUpdate(critical=False), EssentialPackages()])

        assert run.outcomes == [
            ("system-update", StageState.SKIPPED),
            ("essential-packages", StageState.VERIFIED),
        ]
        updated = next(i for i, line in enumerate(host.calls) if re.search(r"apt-get .*update$", line))
        installed = next(i for i, line in enumerate(host.calls) if "apt-get" in line and " install " in line)
        assert updated < installed
        assert packages.installed >= set(deps.ESSENTIAL_PACKAGES)

    def test_package_lists_updated_once_per_run(self, runner, config, app_session, host):
        """Later package stages reuse the lists fetched by the first one."""
        class ExtraPackages(PackageStage):
            name = "extra-packages"
            packages = ("htop",)

        PackageHost(host)

        run = runner.run(config, app_session, [EssentialPackages(), ExtraPackages()])

        assert run.success
        assert len(host.ran(r"apt-get .*update$")) == 1
        assert len(host.ran(r"apt-get .*install -y htop$")) == 1

    def test_mariadb_repository_refreshes_lists(self, config, app_session, make_ctx, host):
        """Adding the MariaDB repository forces a new apt-get update."""
        PackageHost(host)
        ctx = make_ctx(config, app_session)
        ctx.package_lists_updated = True

        MariaDBInstall().apply(ctx)

        repo = next(i for i, line in enumerate(host.calls) if "mariadb_repo_setup" in line)
        updates = [i for i, line in enumerate(host.calls) if re.search(r"apt-get .*update$", line)]
        server = next(i for i, line in enumerate(host.calls) if "install -y mariadb-server" in line)
        assert len(updates) == 1
        assert repo < updates[0] < server

    def test_system_update_failure_is_warning(self, runner, app_session, host, make_config):
        """The upgrade stage is non-critical."""
        host.on(r"^apt-get -s upgrade$", (0, "3 upgraded, 0 newly installed, 0 to remove\n", ""))
        config = make_config()

        run = runner.run(config, app_session, [SystemUpdate(critical=False), CompletionMarker()])

        assert run.success
        assert [record.name for record in run.warnings] == ["system-update"]
        assert run.record("completion-marker").state is StageState.VERIFIED


class TestMariaDBSecure:
    """Tests for setting the MariaDB root password."""

    def test_fresh_server(self, runner, config, app_session, host):
        """The password is persisted first, applied through sudo, then verified."""
        db = MariaDBHost(host)

        run = runner.run(config, app_session, [MariaDBSecure()])

        assert run.record("mariadb-secure").state is StageState.VERIFIED
        stored = re.search(r"^MariaDB Root Password: (\S+)$", host.files[DB_FILE], re.MULTILINE).group(1)
        assert stored == db.root_password
        assert len(stored) == 32

        persisted_at = next(i for i, line in enumerate(host.calls) if "cat > /home/app/mariadb_root_password.txt" in line)
        applied_at = next(i for i, line in enumerate(host.calls) if "mariadb < " in line)
        assert persisted_at < applied_at

    def test_secret_never_on_command_line(self, runner, config, app_session, host):
        """Neither the SQL nor the client options expose the password in argv."""
        db = MariaDBHost(host)
        runner.run(config, app_session, [MariaDBSecure()])

        assert db.root_password
        assert not [line for line in host.calls if db.root_password in line]

    def test_scratch_files_removed(self, runner, config, app_session, host):
        """SQL and option files are deleted after use."""
        MariaDBHost(host)
        runner.run(config, app_session, [MariaDBSecure()])
        assert not [path for path in host.files if path.startswith("/tmp/fvps.")]

    def test_already_secured_is_skipped(self, runner, config, app_session, host):
        """A persisted password that logs in means nothing to do."""
        MariaDBHost(host, root_password="Persisted123", socket_auth=False)
        host.files[DB_FILE] = "MariaDB Root Credentials\n\nMariaDB Root Password: Persisted123\n"

        run = runner.run(config, app_session, [MariaDBSecure()])

        assert run.outcomes == [("mariadb-secure", StageState.SKIPPED)]
        assert not host.ran(r"mariadb < ")

    def test_persisted_but_not_applied(self, runner, config, app_session, host):
        """An earlier run that stopped after persisting reuses the same password."""
        db = MariaDBHost(host)
        host.files[DB_FILE] = "MariaDB Root Password: Earlier123\n"

        run = runner.run(config, app_session, [MariaDBSecure()])

        assert run.success
        assert db.root_password == "Earlier123"

    def test_stored_password_variant(self, runner, make_config, app_session, host):
        """Without socket access the configured password is used to log in."""
        db = MariaDBHost(host, root_password="Configured123", socket_auth=False)
        config = make_config(database={"root_password": "Configured123"})

        run = runner.run(config, app_session, [MariaDBSecure()])

        assert run.success
        assert host.ran(r"--defaults-extra-file=\S+ < ")
        assert db.root_password == "Configured123"
        assert "Configured123" in host.files[DB_FILE]

    def test_password_with_comment_character(self, runner, make_config, app_session, host):
        """A configured password containing `#` and quotes still logs in."""
        db = MariaDBHost(host)
        config = make_config(database={"root_password": 'Ab#cd"12'})

        run = runner.run(config, app_session, [MariaDBSecure()])

        assert run.record("mariadb-secure").state is StageState.VERIFIED
        assert db.root_password == 'Ab#cd"12'

    def test_no_way_in(self, runner, config, app_session, host):
        """If every login method fails the action fails with each attempt listed."""
        MariaDBHost(host, root_password="Unknown123", socket_auth=False)

        run = runner.run(config, app_session, [MariaDBSecure()])

        assert not run.success
        assert len(run.error.details) == 2


class TestMariaDBConfig:
    """Tests for MariaDB tuning."""

    @pytest.fixture
    def db(self, host):
        host.files[DB_FILE] = "MariaDB Root Password: Stored123\n"
        host.on(r"^free -m$", (0, "              total        used\nMem:           4000        1200\n", ""))
        host.on(r"^systemctl is-active mariadb$", (0, "active\n", ""))
        return MariaDBHost(host, root_password="Stored123", socket_auth=False)

    def test_writes_config(self, runner, config, app_session, host, db):
        """The buffer pool is 68.5% of memory and the service restarts."""
        run = runner.run(config, app_session, [MariaDBConfig()])

        assert run.success
        assert re.search(r"^innodb-buffer-pool-size\s+= 2740M$", host.files[MARIADB_CONFIG], re.MULTILINE)
        assert "LimitNOFILE=infinity" in host.files[MARIADB_OVERRIDE]
        assert host.ran(r"^sudo systemctl restart mariadb$")

    def test_wrong_charset_fails(self, runner, config, app_session, host, db):
        """Verification checks the server character set."""
        db.charset = "latin1"

        run = runner.run(config, app_session, [MariaDBConfig()])

        assert run.record("mariadb-config").state is StageState.FAILED
        assert "character_set_server latin1" in run.error.observed

    def test_unchanged_is_skipped(self, runner, config, app_session, host, db, make_ctx):
        """Matching files and settings skip the stage."""
        stage = MariaDBConfig()
        rendered, override = stage._rendered(make_ctx(config, app_session))
        host.files[MARIADB_CONFIG] = rendered
        host.files[MARIADB_OVERRIDE] = override

        run = runner.run(config, app_session, [stage])

        assert run.outcomes == [("mariadb-config", StageState.SKIPPED)]


class TestCompletionMarker:
    """Tests for the completion marker."""

    def test_written(self, runner, config, app_session, host):
        """The marker records the host and the password file location."""
        host.on(r"^hostname$", (0, "erp-01\n", ""))

        runner.run(config, app_session, [CompletionMarker(critical=False)])

        marker = host.files["/home/app/frappe_dependencies_completed.txt"]
        assert "Server: erp-01" in marker
        assert DB_FILE in marker
        assert host.owners["/home/app/frappe_dependencies_completed.txt"] == "app:app"


class TestBuildStages:
    """Tests for the dependency stage list."""

    def test_order_and_criticality(self, config):
        """System update and the marker are the only soft stages."""
        stages = deps.build_stages(config)
        assert [s.name for s in stages][0] == "system-update"
        assert [s.name for s in stages][-1] == "completion-marker"
        assert [s.name for s in stages].index("mariadb-secure") < [s.name for s in stages].index("mariadb-config")
        assert {s.name for s in stages if not s.critical} == {"system-update", "completion-marker"}
