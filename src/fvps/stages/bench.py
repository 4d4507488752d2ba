"""Frappe bench bootstrap: bench init, credentials, apps and the site.

Runs as the application user on the hardened port after the deps
group. The database root password comes from the file the deps group
left on the host; the administrator password is generated here (unless
configured) and persisted next to it.
"""

import json
import shlex

from fvps.core.config import ProvisionConfig
from fvps.core.exceptions import NotFoundError
from fvps.core.pipeline import Stage, StageContext, Verification
from fvps.core.remote import background_process
from fvps.core.validation import generate_password
from fvps.stages.deps import LOCAL_BIN_EXPORT, NVM, db_root_password


# bench, node and yarn all come from the user's own installs
BENCH_ENV = LOCAL_BIN_EXPORT + "; " + NVM
PREREQUISITES = ("bench", "node", "yarn", "mariadb")
ADMIN_PASSWORD_LENGTH = 16
ADMIN_USERNAME = "Administrator"
BENCH_START_SETTLE = 5
# Bracketed so pkill does not match its own command line
BENCH_START_PATTERN = "[b]ench start"


def bench_script(ctx: StageContext, command: str) -> str:
    """Shell script running `command` inside the bench directory."""
    return BENCH_ENV + f"cd {shlex.quote(ctx.config.frappe.bench_path)} && {command}"


def common_site_config_path(ctx: StageContext) -> str:
    return f"{ctx.config.frappe.bench_path}/sites/common_site_config.json"


class Prerequisites(Stage):
    name = "prerequisites"
    description = "Check bench, node, yarn and the MariaDB client"

    def _missing(self, ctx: StageContext) -> list[str]:
        missing = []
        for tool in PREREQUISITES:
            result = self.query(ctx, BENCH_ENV + f"command -v {tool}", ok=(0, 1, 127))
            if not result.success:
                missing.append(tool)
        return missing

    def is_satisfied(self, ctx: StageContext) -> bool:
        return not self._missing(ctx)

    def apply(self, ctx: StageContext) -> None:
        raise self.fail(
            f"Missing prerequisites: {', '.join(self._missing(ctx))}",
            hint="Run `fvps deps` first",
        )

    def verify(self, ctx: StageContext) -> Verification:
        missing = self._missing(ctx)
        return Verification(
            passed=not missing,
            expected="available: " + ", ".join(PREREQUISITES),
            observed="missing: " + ", ".join(missing) if missing else "all available",
        )


class BenchInit(Stage):
    name = "bench-init"
    description = "Initialize the bench directory"
    required_fields = ("frappe.version", "frappe.bench_name")

    def _initialized(self, ctx: StageContext) -> bool:
        bench = ctx.config.frappe.bench_path
        config = self.query(ctx, ["test", "-f", f"{bench}/sites/common_site_config.json"], ok=(0, 1))
        frappe_app = self.query(ctx, ["test", "-d", f"{bench}/apps/frappe"], ok=(0, 1))
        return config.success and frappe_app.success

    def is_satisfied(self, ctx: StageContext) -> bool:
        return self._initialized(ctx)

    def apply(self, ctx: StageContext) -> None:
        frappe = ctx.config.frappe
        ctx.session.run(
            BENCH_ENV
            + f"cd {shlex.quote(frappe.home)} && bench init --verbose --no-backups "
            + f"--frappe-branch {shlex.quote(frappe.version)} {shlex.quote(frappe.bench_name)}",
            check=True,
            description="bench init",
        )

    def verify(self, ctx: StageContext) -> Verification:
        initialized = self._initialized(ctx)
        return Verification(
            passed=initialized,
            expected=f"bench at {ctx.config.frappe.bench_path} with the frappe app",
            observed="initialized" if initialized else "incomplete or missing",
        )


class BenchCredentials(Stage):
    """Store database and administrator passwords in common_site_config.json.

    bench reads `root_password` and `admin_password` from there when
    creating sites, so neither password ever appears on a command line.
    """

    name = "bench-credentials"
    description = "Configure bench with the database and administrator passwords"

    def _read_config(self, ctx: StageContext) -> dict:
        result = self.query(ctx, ["cat", common_site_config_path(ctx)], sensitive=True)
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise self.fail(f"Cannot parse {common_site_config_path(ctx)}", details=[str(e)]) from e

    def _problems(self, ctx: StageContext) -> list[str]:
        admin = ctx.vault.ensure("admin")
        if admin.generated:
            return ["administrator password not persisted"]
        try:
            stored = ctx.vault.retrieve(admin.remote_path, admin.label)
        except NotFoundError:
            return ["administrator password not persisted"]

        problems = []
        if stored.value != admin.value:
            problems.append("persisted administrator password differs from configuration")

        config = self._read_config(ctx)
        if config.get("root_password") != db_root_password(ctx):
            problems.append("root_password not set")
        if config.get("admin_password") != admin.value:
            problems.append("admin_password not set")
        return problems

    def is_satisfied(self, ctx: StageContext) -> bool:
        return not self._problems(ctx)

    def apply(self, ctx: StageContext) -> None:
        frappe = ctx.config.frappe
        root_password = db_root_password(ctx)
        admin = ctx.vault.ensure(
            "admin",
            generator=lambda: generate_password(ADMIN_PASSWORD_LENGTH),
        )
        ctx.vault.persist(admin, extra={
            "Site": frappe.site_name,
            "Administrator Username": ADMIN_USERNAME,
            "Frappe Version": frappe.version,
            "ERPNext Installed": "true" if frappe.install_erpnext else "false",
        })

        config = self._read_config(ctx)
        config["root_password"] = root_password
        config["admin_password"] = admin.value
        ctx.session.write_file(
            common_site_config_path(ctx),
            json.dumps(config, indent=1, sort_keys=True) + "\n",
            mode="600",
            sensitive=True,
        )

    def verify(self, ctx: StageContext) -> Verification:
        problems = self._problems(ctx)
        return Verification(
            passed=not problems,
            expected="passwords persisted and present in common_site_config.json",
            observed="; ".join(problems) or "ok",
        )


class ERPNextApp(Stage):
    name = "erpnext-app"
    description = "Download the ERPNext app into the bench"

    def _present(self, ctx: StageContext) -> bool:
        bench = ctx.config.frappe.bench_path
        app_dir = self.query(ctx, ["test", "-d", f"{bench}/apps/erpnext"], ok=(0, 1))
        listed = self.query(ctx, ["grep", "-qx", "erpnext", f"{bench}/sites/apps.txt"], ok=(0, 1, 2))
        return app_dir.success and listed.success

    def is_satisfied(self, ctx: StageContext) -> bool:
        return self._present(ctx)

    def apply(self, ctx: StageContext) -> None:
        ctx.session.run(
            bench_script(ctx, "bench get-app --resolve-deps erpnext"),
            check=True,
            description="bench get-app erpnext",
        )

    def verify(self, ctx: StageContext) -> Verification:
        present = self._present(ctx)
        return Verification(
            passed=present,
            expected="erpnext in apps/ and sites/apps.txt",
            observed="present" if present else "missing",
        )


class Site(Stage):
    name = "site"
    description = "Create the site"
    required_fields = ("frappe.site_name",)

    def _site_config(self, ctx: StageContext) -> str:
        frappe = ctx.config.frappe
        return f"{frappe.bench_path}/sites/{frappe.site_name}/site_config.json"

    def _exists(self, ctx: StageContext) -> bool:
        return self.query(ctx, ["test", "-f", self._site_config(ctx)], ok=(0, 1)).success

    def _problems(self, ctx: StageContext) -> list[str]:
        frappe = ctx.config.frappe
        if not self._exists(ctx):
            return [f"{frappe.site_name} does not exist"]

        if frappe.install_erpnext:
            apps = self.query(
                ctx,
                bench_script(ctx, f"bench --site {shlex.quote(frappe.site_name)} list-apps"),
                ok=(0, 1),
            )
            if "erpnext" not in apps.stdout:
                return ["erpnext not installed on the site"]
        return []

    def is_satisfied(self, ctx: StageContext) -> bool:
        return not self._problems(ctx)

    def apply(self, ctx: StageContext) -> None:
        frappe = ctx.config.frappe
        site = shlex.quote(frappe.site_name)
        exists = self._exists(ctx)

        # new-site and install-app need the bench's redis and socketio processes
        with background_process(
            ctx.session,
            bench_script(ctx, "bench start"),
            settle=BENCH_START_SETTLE,
            pattern=BENCH_START_PATTERN,
        ):
            if not exists:
                command = "bench new-site --verbose"
                if frappe.install_erpnext:
                    command += " --install-app erpnext"
                ctx.session.run(bench_script(ctx, f"{command} {site}"), check=True, description="bench new-site")
            elif frappe.install_erpnext:
                # An earlier run created the site but stopped before erpnext
                ctx.session.run(
                    bench_script(ctx, f"bench --site {site} install-app erpnext"),
                    check=True,
                    description="bench install-app erpnext",
                )

    def verify(self, ctx: StageContext) -> Verification:
        problems = self._problems(ctx)
        return Verification(
            passed=not problems,
            expected=f"site {ctx.config.frappe.site_name}"
            + (" with erpnext" if ctx.config.frappe.install_erpnext else ""),
            observed="; ".join(problems) or "ok",
        )


def build_stages(config: ProvisionConfig) -> list[Stage]:
    """Bootstrap stages in execution order."""
    stages: list[Stage] = [
        Prerequisites(critical=True),
        BenchInit(critical=True),
        BenchCredentials(critical=True),
    ]
    if config.frappe.install_erpnext:
        stages.append(ERPNextApp(critical=True))
    stages.append(Site(critical=True))
    return stages
