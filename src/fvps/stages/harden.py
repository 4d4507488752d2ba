"""Security hardening and host basics.

Runs as the administrative user on the initial SSH port. A host that
was already hardened no longer accepts that login, so the group falls
back to the application user on the hardened port, where every stage
is then expected to skip.
"""

import re
import time
from typing import Optional

from rich.markup import escape

from fvps.core.config import ProvisionConfig
from fvps.core.exceptions import ConnectivityError
from fvps.core.output import Console, console
from fvps.core.pipeline import Connector, Stage, StageContext, Verification, connect
from fvps.core.remote import RemoteSession, forget_host_keys
from fvps.core.templates import render


SWAPFILE = "/swapfile"
FSTAB_LINE = f"{SWAPFILE} none swap sw 0 0"
SYSCTL_CONF = "/etc/sysctl.conf"
SWAP_SYSCTLS = {"vm.swappiness": "1", "vm.vfs_cache_pressure": "50"}
SSHD_CONFIG = "/etc/ssh/sshd_config"
SSH_RESTART_SETTLE = 1
SSHD_MANAGED_HEADER = "# Managed by fvps"

# sshd -T prints this older spelling on some releases
ROOT_LOGIN_ALIASES = {"prohibit-password", "without-password"}


def parse_swapon(output: str) -> dict[str, str]:
    """Map swap device name to size from `swapon --show=NAME,SIZE --noheadings`."""
    active = {}
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2:
            active[fields[0]] = fields[1]
    return active


def set_sysctl_values(text: str, values: dict[str, str]) -> str:
    """Return sysctl.conf content with each key set once to its value."""
    lines = text.splitlines()
    pending = dict(values)
    result = []
    for line in lines:
        key = line.split("=", 1)[0].strip()
        if "=" in line and not line.lstrip().startswith("#") and key in values:
            if key in pending:
                result.append(f"{key} = {pending.pop(key)}")
            continue
        result.append(line)
    result.extend(f"{key} = {value}" for key, value in pending.items())
    return "\n".join(result) + "\n"


def read_sysctl_values(text: str, keys: set[str]) -> dict[str, str]:
    """Extract the effective values of `keys` from sysctl.conf content."""
    found = {}
    for line in text.splitlines():
        if line.lstrip().startswith("#") or "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        if key in keys:
            found[key] = value
    return found


def hardened_sshd_settings(port: int) -> dict[str, str]:
    return {
        "Port": str(port),
        "PermitRootLogin": "prohibit-password",
        "PasswordAuthentication": "no",
        "PubkeyAuthentication": "yes",
    }


def harden_sshd_config(text: str, settings: dict[str, str]) -> str:
    """Return sshd_config content with `settings` applied.

    Existing directives, commented or not, are removed. The new block
    goes at the top: sshd keeps the first value it reads, and Include
    and Match blocks further down must not override it.
    """
    pattern = re.compile(
        r"^\s*#?\s*(" + "|".join(map(re.escape, settings)) + r")\s",
        re.IGNORECASE,
    )
    kept = [
        line for line in text.splitlines()
        if not pattern.match(line) and line != SSHD_MANAGED_HEADER
    ]
    # Blank separator left over from an earlier managed block
    while kept and not kept[0].strip():
        kept.pop(0)
    block = [f"{key} {value}" for key, value in settings.items()]
    return "\n".join([SSHD_MANAGED_HEADER, *block, "", *kept]) + "\n"


def parse_sshd_effective(output: str) -> dict[str, list[str]]:
    """Parse `sshd -T` output into lowercase keys with all their values."""
    effective: dict[str, list[str]] = {}
    for line in output.splitlines():
        key, _, value = line.strip().partition(" ")
        if key:
            effective.setdefault(key.lower(), []).append(value.strip())
    return effective


def home_of(ctx: StageContext, user: str, stage: Stage) -> str:
    """Home directory of `user` from the account database."""
    result = stage.query(ctx, ["getent", "passwd", user])
    return result.stdout.strip().split(":")[5]


class CreateUser(Stage):
    name = "create-user"
    description = "Create the application user"
    required_fields = ("frappe.username",)

    def _exists(self, ctx: StageContext) -> bool:
        result = self.query(ctx, ["id", ctx.config.frappe.username], ok=(0, 1))
        return result.success

    def is_satisfied(self, ctx: StageContext) -> bool:
        return self._exists(ctx)

    def apply(self, ctx: StageContext) -> None:
        ctx.session.run(
            ["adduser", "--disabled-password", "--gecos", "", ctx.config.frappe.username],
            sudo=True,
            check=True,
        )

    def verify(self, ctx: StageContext) -> Verification:
        exists = self._exists(ctx)
        return Verification(
            passed=exists,
            expected=f"user {ctx.config.frappe.username} exists",
            observed="user exists" if exists else "no such user",
        )


class SudoAccess(Stage):
    name = "sudo-access"
    description = "Grant passwordless sudo"
    required_fields = ("frappe.username",)

    def _paths(self, ctx: StageContext) -> tuple[str, str]:
        user = ctx.config.frappe.username
        return f"/etc/sudoers.d/{user}", render("sudoers.j2", username=user)

    def _state(self, ctx: StageContext) -> tuple[bool, bool, str]:
        user = ctx.config.frappe.username
        path, rule = self._paths(ctx)
        groups = self.query(ctx, ["id", "-nG", user]).stdout.split()
        current = self.query(ctx, ["cat", path], sudo=True, ok=(0, 1))
        mode = self.query(ctx, ["stat", "-c", "%a", path], sudo=True, ok=(0, 1))
        return (
            "sudo" in groups,
            current.success and current.stdout.strip() == rule.strip(),
            mode.stdout.strip() if mode.success else "missing",
        )

    def is_satisfied(self, ctx: StageContext) -> bool:
        in_group, rule_ok, mode = self._state(ctx)
        return in_group and rule_ok and mode == "440"

    def apply(self, ctx: StageContext) -> None:
        user = ctx.config.frappe.username
        path, rule = self._paths(ctx)
        ctx.session.run(["usermod", "-aG", "sudo", user], sudo=True, check=True)
        ctx.session.write_file(path, rule, sudo=True, mode="440")
        ctx.session.run(["visudo", "-cf", path], sudo=True, check=True)

    def verify(self, ctx: StageContext) -> Verification:
        in_group, rule_ok, mode = self._state(ctx)
        return Verification(
            passed=in_group and rule_ok and mode == "440",
            expected="member of sudo, NOPASSWD rule present, mode 440",
            observed=f"sudo group: {in_group}, rule: {rule_ok}, mode: {mode}",
        )


class SSHKeys(Stage):
    name = "ssh-keys"
    description = "Authorize the administrator's SSH keys for the application user"
    required_fields = ("frappe.username",)

    def _paths(self, ctx: StageContext) -> tuple[str, str, str]:
        admin_home = home_of(ctx, ctx.config.user.username, self)
        ssh_dir = f"{ctx.config.frappe.home}/.ssh"
        return f"{admin_home}/.ssh/authorized_keys", ssh_dir, f"{ssh_dir}/authorized_keys"

    def _state(self, ctx: StageContext) -> tuple[bool, str]:
        source, ssh_dir, target = self._paths(ctx)
        same = self.query(ctx, ["cmp", "-s", source, target], sudo=True, ok=(0, 1, 2))
        perms = self.query(ctx, ["stat", "-c", "%a %U", ssh_dir, target], sudo=True, ok=(0, 1))
        return same.success, " / ".join(perms.stdout.strip().splitlines())

    def _expected_perms(self, ctx: StageContext) -> str:
        user = ctx.config.frappe.username
        return f"700 {user} / 600 {user}"

    def is_satisfied(self, ctx: StageContext) -> bool:
        same, perms = self._state(ctx)
        return same and perms == self._expected_perms(ctx)

    def apply(self, ctx: StageContext) -> None:
        user = ctx.config.frappe.username
        source, ssh_dir, target = self._paths(ctx)
        run = ctx.session.run
        run(["mkdir", "-p", ssh_dir], sudo=True, check=True)
        run(["cp", source, target], sudo=True, check=True)
        run(["chown", "-R", f"{user}:{user}", ssh_dir], sudo=True, check=True)
        run(["chmod", "700", ssh_dir], sudo=True, check=True)
        run(["chmod", "600", target], sudo=True, check=True)

    def verify(self, ctx: StageContext) -> Verification:
        same, perms = self._state(ctx)
        return Verification(
            passed=same and perms == self._expected_perms(ctx),
            expected=f"keys match the administrator's, modes {self._expected_perms(ctx)}",
            observed=f"keys match: {same}, modes {perms or 'missing'}",
        )


class Timezone(Stage):
    name = "timezone"
    description = "Set the system timezone"
    required_fields = ("server.timezone",)

    def _current(self, ctx: StageContext) -> str:
        result = self.query(ctx, ["timedatectl", "show", "--property=Timezone", "--value"])
        return result.stdout.strip()

    def is_satisfied(self, ctx: StageContext) -> bool:
        return self._current(ctx) == ctx.config.server.timezone

    def apply(self, ctx: StageContext) -> None:
        ctx.session.run(
            ["timedatectl", "set-timezone", ctx.config.server.timezone],
            sudo=True,
            check=True,
        )

    def verify(self, ctx: StageContext) -> Verification:
        current = self._current(ctx)
        return Verification(
            passed=current == ctx.config.server.timezone,
            expected=ctx.config.server.timezone,
            observed=current or "unknown",
        )


class Swap(Stage):
    name = "swap"
    description = "Create and enable the swap file"
    required_fields = ("server.swap_size",)

    def _state(self, ctx: StageContext) -> tuple[Optional[str], bool]:
        active = parse_swapon(
            self.query(ctx, ["swapon", "--show=NAME,SIZE", "--noheadings"], sudo=True).stdout
        )
        fstab = self.query(ctx, ["grep", "-qE", rf"^{SWAPFILE}\s+none\s+swap", "/etc/fstab"], ok=(0, 1))
        return active.get(SWAPFILE), fstab.success

    def is_satisfied(self, ctx: StageContext) -> bool:
        size, persisted = self._state(ctx)
        return size == ctx.config.server.swap_size and persisted

    def apply(self, ctx: StageContext) -> None:
        size = ctx.config.server.swap_size
        run = ctx.session.run
        active, persisted = self._state(ctx)

        if active != size:
            if active is not None:
                run(["swapoff", SWAPFILE], sudo=True, check=True)
            run(["rm", "-f", SWAPFILE], sudo=True, check=True)
            run(["fallocate", "-l", size, SWAPFILE], sudo=True, check=True)
            run(["chmod", "600", SWAPFILE], sudo=True, check=True)
            run(["mkswap", SWAPFILE], sudo=True, check=True)
            run(["swapon", SWAPFILE], sudo=True, check=True)

        if not persisted:
            run(["tee", "-a", "/etc/fstab"], sudo=True, input=FSTAB_LINE + "\n", check=True)

    def verify(self, ctx: StageContext) -> Verification:
        size, persisted = self._state(ctx)
        expected = ctx.config.server.swap_size
        return Verification(
            passed=size == expected and persisted,
            expected=f"{SWAPFILE} active with size {expected}, listed in /etc/fstab",
            observed=f"active size {size or 'none'}, in fstab: {'yes' if persisted else 'no'}",
        )


class SwapTuning(Stage):
    name = "swap-tuning"
    description = "Tune swappiness and cache pressure"

    def _state(self, ctx: StageContext) -> tuple[dict[str, str], dict[str, str]]:
        live = {}
        for key in SWAP_SYSCTLS:
            live[key] = self.query(ctx, ["sysctl", "-n", key]).stdout.strip()
        text = self.query(ctx, ["cat", SYSCTL_CONF], ok=(0, 1)).stdout
        return live, read_sysctl_values(text, set(SWAP_SYSCTLS))

    def is_satisfied(self, ctx: StageContext) -> bool:
        live, persisted = self._state(ctx)
        return live == SWAP_SYSCTLS and persisted == SWAP_SYSCTLS

    def apply(self, ctx: StageContext) -> None:
        current = ctx.session.run(["cat", SYSCTL_CONF], sudo=True).stdout
        ctx.session.write_file(SYSCTL_CONF, set_sysctl_values(current, SWAP_SYSCTLS), sudo=True)
        ctx.session.run(["sysctl", "-p"], sudo=True, check=True)

    def verify(self, ctx: StageContext) -> Verification:
        live, persisted = self._state(ctx)
        return Verification(
            passed=live == SWAP_SYSCTLS and persisted == SWAP_SYSCTLS,
            expected=", ".join(f"{k}={v}" for k, v in SWAP_SYSCTLS.items()),
            observed=f"live {live}, {SYSCTL_CONF} {persisted}",
        )


class SSHHardening(Stage):
    name = "ssh-hardening"
    description = "Harden sshd and move it to the hardened port"

    def _mismatches(self, ctx: StageContext) -> list[str]:
        port = str(ctx.config.ssh.hardened_port)
        effective = parse_sshd_effective(self.query(ctx, ["sshd", "-T"], sudo=True).stdout)
        problems = []

        if effective.get("port") != [port]:
            problems.append(f"port {','.join(effective.get('port', [])) or 'unset'}")
        root_login = effective.get("permitrootlogin", [""])[0]
        if root_login not in ROOT_LOGIN_ALIASES:
            problems.append(f"permitrootlogin {root_login or 'unset'}")
        if effective.get("passwordauthentication", [""])[0] != "no":
            problems.append("passwordauthentication enabled")
        if effective.get("pubkeyauthentication", [""])[0] != "yes":
            problems.append("pubkeyauthentication disabled")

        listening = self.query(ctx, ["ss", "-tln"], sudo=True).stdout
        if not re.search(rf":{port}\s", listening):
            problems.append(f"nothing listening on {port}")
        return problems

    def is_satisfied(self, ctx: StageContext) -> bool:
        return not self._mismatches(ctx)

    def apply(self, ctx: StageContext) -> None:
        run = ctx.session.run
        settings = hardened_sshd_settings(ctx.config.ssh.hardened_port)
        current = run(["cat", SSHD_CONFIG], sudo=True, check=True).stdout

        run(["cp", "-p", SSHD_CONFIG, f"{SSHD_CONFIG}.backup"], sudo=True, check=True)
        ctx.session.write_file(SSHD_CONFIG, harden_sshd_config(current, settings), sudo=True)

        validated = run(["sshd", "-t"], sudo=True)
        if not validated.success:
            run(["cp", "-p", f"{SSHD_CONFIG}.backup", SSHD_CONFIG], sudo=True)
            raise self.fail(
                "sshd rejected the hardened configuration; original restored",
                details=[validated.stderr.strip()],
            )

        run(["systemctl", "daemon-reload"], sudo=True, check=True)
        socket = run(["systemctl", "restart", "ssh.socket"], sudo=True)
        if not socket.success:
            ctx.console.debug("ssh.socket not restarted (no socket activation on this host)")
        run(["systemctl", "restart", "ssh.service"], sudo=True, check=True)
        time.sleep(SSH_RESTART_SETTLE)

    def verify(self, ctx: StageContext) -> Verification:
        problems = self._mismatches(ctx)
        if problems:
            return Verification(
                passed=False,
                expected="hardened sshd settings active",
                observed="; ".join(problems),
            )

        # The old session says nothing about the new port; log in again.
        ctx.reopen(port=ctx.config.ssh.hardened_port, user=ctx.config.frappe.username)
        return Verification(
            passed=True,
            expected=f"login as {ctx.config.frappe.username} on port {ctx.config.ssh.hardened_port}",
            observed=f"connected as {ctx.session.target}",
        )


def build_stages(config: ProvisionConfig) -> list[Stage]:
    """Hardening stages in execution order."""
    return [
        CreateUser(critical=True),
        SudoAccess(critical=True),
        SSHKeys(critical=True),
        Timezone(critical=False),
        Swap(critical=True),
        SwapTuning(critical=False),
        SSHHardening(critical=True),
    ]


def open_session(
    config: ProvisionConfig,
    *,
    connector: Connector = RemoteSession.open,
    output: Console = console,
) -> RemoteSession:
    """Connect for hardening.

    Stale pinned keys for the address are dropped first. The
    administrative login is tried before the hardened one.
    """
    removed = forget_host_keys(
        config.ssh.known_hosts,
        config.server.ip_address,
        [config.ssh.port, config.ssh.hardened_port],
    )
    if removed:
        output.verbose(f"Removed {removed} stale host key(s) for {config.server.ip_address}")

    try:
        return connect(
            config,
            port=config.ssh.port,
            user=config.user.username,
            connector=connector,
            output=output,
        )
    except ConnectivityError as first:
        output.verbose(
            f"{escape(first.message)}; trying {config.frappe.username} "
            f"on port {config.ssh.hardened_port}"
        )
        try:
            return connect(
                config,
                port=config.ssh.hardened_port,
                user=config.frappe.username,
                connector=connector,
                output=output,
            )
        except ConnectivityError as second:
            raise ConnectivityError(
                f"Cannot reach {config.server.ip_address} as "
                f"{config.user.username}:{config.ssh.port} or "
                f"{config.frappe.username}:{config.ssh.hardened_port}",
                address=config.server.ip_address,
                hint="Check the address and that your SSH key is authorized on the server",
                details=[first.message, second.message],
            ) from second
