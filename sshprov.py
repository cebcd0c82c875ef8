#!/usr/bin/python3
"""sshprov — audit, provision and remove SSH key-only local user accounts.

Creates a locked-password account, installs a public key into
~/.ssh/authorized_keys with the right ownership and modes, and optionally
grants the distribution's admin group plus a passwordless sudoers drop-in.
Every run starts with a read-only audit; --cleanup reverses the setup.
"""

import argparse
import grp
import logging
import os
import pwd
import re
import shlex
import shutil
import stat
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

# ── Constants ────────────────────────────────────────────────────────────────

LOG_FILE = Path("/var/log/ssh_user_mgmt.log")
BACKUP_DIR = Path("/var/backups")
SUDOERS_DIR = Path("/etc/sudoers.d")
SKEL_DIR = Path("/etc/skel")
OS_RELEASE = Path("/etc/os-release")
HOME_ROOT = Path("/home")

SHELL_CANDIDATES = ("/bin/bash", "/bin/zsh")
FALLBACK_SHELL = "/bin/sh"

DEFAULT_ADMIN_GROUP = "wheel"

# Matched against ID first, then each ID_LIKE token.
ADMIN_GROUPS = {
    "rhel": "wheel",
    "centos": "wheel",
    "fedora": "wheel",
    "rocky": "wheel",
    "almalinux": "wheel",
    "ol": "wheel",
    "amzn": "wheel",
    "debian": "sudo",
    "ubuntu": "sudo",
    "sles": "wheel",
    "suse": "wheel",
    "opensuse": "wheel",
    "opensuse-leap": "wheel",
    "opensuse-tumbleweed": "wheel",
}

KEY_PREFIX_RE = re.compile(
    r"^(?P<prefix>ssh-rsa|ssh-dss|ssh-ed25519|ecdsa-sha2-nistp\d+"
    r"|sk-ssh-ed25519|sk-ecdsa-sha2-nistp256)"
)

# Used only by the audit's "plausible key present" check.
PLAUSIBLE_KEY_RE = re.compile(r"ssh-(rsa|ed25519|dss)|ecdsa-sha2-nistp|sk-(ssh|ecdsa)-")

log = logging.getLogger("sshprov")
log.addHandler(logging.NullHandler())


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    UNDO     = "\uf0e2"   # rotate-left
    SHIELD   = "\uf132"   # shield
    USERS    = "\uf0c0"   # users
    KEY      = "\uf084"   # key
    TRASH    = "\uf1f8"   # trash


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


# ── Errors ───────────────────────────────────────────────────────────────────

class SshProvError(Exception):
    """Base class for errors that end a run with a non-zero exit."""


class ValidationError(SshProvError):
    """Bad public key or empty required input."""


class PrivilegeError(SshProvError):
    """Not running as root for a run that would mutate the system."""


class SudoersValidationError(SshProvError):
    """visudo rejected the generated drop-in (the file has been removed)."""


# ── Operation log ────────────────────────────────────────────────────────────

def setup_logging(path: Path = LOG_FILE) -> Optional[logging.Handler]:
    """Attach an append-only file sink to the ``sshprov`` logger.

    Returns the handler, or None when the file cannot be opened (typically a
    dry run as an unprivileged user); the run continues without a file sink.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    except OSError as exc:
        _warn(f"Cannot open log file {path} ({exc.strerror or exc}); "
              "actions will not be logged")
        return None
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S",
    ))
    log.addHandler(handler)
    log.setLevel(logging.INFO)
    log.propagate = False
    return handler


# ── OS detection ─────────────────────────────────────────────────────────────

def read_os_release(path: Path = OS_RELEASE) -> dict:
    """Parse an os-release file into a dict; empty when the file is absent."""
    info = {}
    try:
        with open(path) as fh:
            for line in fh:
                line = line.strip()
                if "=" in line and not line.startswith("#"):
                    key, _, val = line.partition("=")
                    info[key] = val.strip().strip('"').strip("'")
    except FileNotFoundError:
        return {}
    return info


def admin_group_for(info: dict) -> str:
    """Pick the administrative group for an os-release mapping."""
    tokens = [info.get("ID", "").lower()]
    tokens += info.get("ID_LIKE", "").lower().split()
    for token in tokens:
        if token in ADMIN_GROUPS:
            return ADMIN_GROUPS[token]
    # Amazon Linux 1 ships no usable ID_LIKE.
    if "amazon linux" in info.get("PRETTY_NAME", "").lower():
        return "wheel"
    return DEFAULT_ADMIN_GROUP


@dataclass(frozen=True)
class AdminGroupBinding:
    group: str
    sudoers_path: Path
    nopasswd_enabled: bool
    os_name: str = "unknown"

    @property
    def sudoers_rule(self) -> str:
        return f"%{self.group} ALL=(ALL) NOPASSWD: ALL"


def detect_admin_binding(os_release: Path = OS_RELEASE,
                         sudoers_dir: Path = SUDOERS_DIR) -> AdminGroupBinding:
    """Resolve the admin group and its drop-in path once for the whole run."""
    info = read_os_release(os_release)
    if not info:
        _warn(f"{os_release} not found — assuming admin group "
              f"'{DEFAULT_ADMIN_GROUP}'")
    group = admin_group_for(info)
    path = sudoers_dir / f"99-{group}-nopasswd"
    return AdminGroupBinding(
        group=group,
        sudoers_path=path,
        nopasswd_enabled=path.exists(),
        os_name=info.get("PRETTY_NAME") or info.get("NAME") or "unknown",
    )


# ── Public keys ──────────────────────────────────────────────────────────────

_ALGORITHMS = {
    "ssh-rsa": "rsa",
    "ssh-dss": "dss",
    "ssh-ed25519": "ed25519",
    "sk-ssh-ed25519": "sk",
    "sk-ecdsa-sha2-nistp256": "sk",
}


@dataclass(frozen=True)
class PublicKey:
    raw: str
    algorithm: Optional[str]
    valid: bool

    @classmethod
    def parse(cls, text: str) -> "PublicKey":
        """Classify *text* by its key-type prefix.  Never raises."""
        raw = (text or "").strip()
        m = KEY_PREFIX_RE.match(raw)
        # One key per authorized_keys line; a line break would smuggle in more.
        if not m or "\n" in raw or "\r" in raw:
            return cls(raw=raw, algorithm=None, valid=False)
        prefix = m.group("prefix")
        algorithm = _ALGORITHMS.get(prefix, "ecdsa")
        return cls(raw=raw, algorithm=algorithm, valid=True)

    def short(self) -> str:
        """First two fields abbreviated, for messages that must not dump the key."""
        parts = self.raw.split()
        if len(parts) < 2:
            return self.raw[:40]
        body = parts[1]
        if len(body) > 16:
            body = f"{body[:8]}…{body[-8:]}"
        return f"{parts[0]} {body}"


# ── Shells ───────────────────────────────────────────────────────────────────

class ShellKind(Enum):
    BASH = "bash"
    ZSH = "zsh"
    SH = "sh"
    FISH = "fish"
    UNKNOWN = "unknown"

    @classmethod
    def from_path(cls, shell: str) -> "ShellKind":
        name = os.path.basename(shell or "")
        if name == "bash":
            return cls.BASH
        if name == "zsh":
            return cls.ZSH
        if name in ("sh", "dash", "ksh"):
            return cls.SH
        if name == "fish":
            return cls.FISH
        return cls.UNKNOWN

    @property
    def rc_files(self) -> tuple:
        return _RC_FILES[self]


_RC_FILES = {
    ShellKind.BASH: (".bashrc", ".bash_profile"),
    ShellKind.ZSH: (".zshrc",),
    ShellKind.SH: (".profile",),
    ShellKind.FISH: (".config/fish/config.fish",),
    ShellKind.UNKNOWN: (".bashrc", ".profile"),
}

# Directories a shell's rc files live under, created before the files.
_RC_DIRS = {
    ShellKind.FISH: (".config", ".config/fish"),
}


# ── Users ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ManagedUser:
    username: str
    exists: bool
    uid: Optional[int]
    gid: Optional[int]
    group: str
    home: Path
    shell: str

    @property
    def shell_kind(self) -> ShellKind:
        return ShellKind.from_path(self.shell)

    @property
    def ssh_dir(self) -> Path:
        return self.home / ".ssh"

    @property
    def authorized_keys(self) -> Path:
        return self.ssh_dir / "authorized_keys"


# ── Commands ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Command:
    """One mutating operation: a process to exec or a filesystem change.

    ``describe()`` is what dry-run prints and what gets recorded, so the
    rendered text always corresponds to what ``SystemGateway.execute`` does.
    """

    kind: str
    args: tuple
    content: Optional[str] = None

    @classmethod
    def exec(cls, *argv) -> "Command":
        return cls("exec", tuple(str(a) for a in argv))

    @classmethod
    def mkdir(cls, path: Path) -> "Command":
        return cls("mkdir", (str(path),))

    @classmethod
    def touch(cls, path: Path) -> "Command":
        return cls("touch", (str(path),))

    @classmethod
    def copy(cls, src: Path, dst: Path) -> "Command":
        return cls("copy", (str(src), str(dst)))

    @classmethod
    def write(cls, path: Path, line: str) -> "Command":
        return cls("write", (str(path),), line)

    @classmethod
    def append(cls, path: Path, line: str) -> "Command":
        return cls("append", (str(path),), line)

    @classmethod
    def chown(cls, path: Path, user: str, group: str) -> "Command":
        return cls("chown", (str(path), user, group))

    @classmethod
    def chmod(cls, path: Path, mode: int) -> "Command":
        return cls("chmod", (str(path), mode))

    @classmethod
    def remove(cls, path: Path) -> "Command":
        return cls("remove", (str(path),))

    def describe(self) -> str:
        q = shlex.quote
        a = self.args
        if self.kind == "exec":
            return " ".join(q(x) for x in a)
        if self.kind == "mkdir":
            return f"mkdir -p {q(a[0])}"
        if self.kind == "touch":
            return f"touch {q(a[0])}"
        if self.kind == "copy":
            return f"cp {q(a[0])} {q(a[1])}"
        if self.kind == "write":
            return f"printf '%s\\n' {q(self.content)} > {q(a[0])}"
        if self.kind == "append":
            return f"printf '%s\\n' {q(self.content)} >> {q(a[0])}"
        if self.kind == "chown":
            return f"chown {q(a[1])}:{q(a[2])} {q(a[0])}"
        if self.kind == "chmod":
            return f"chmod {a[1]:04o} {q(a[0])}"
        if self.kind == "remove":
            return f"rm -f {q(a[0])}"
        raise ValueError(f"unknown command kind: {self.kind}")


# ── OS command gateway ───────────────────────────────────────────────────────

def _open_nofollow(path, flags: int, mode: int = 0o600) -> int:
    """os.open that fails with ELOOP when *path* is a symlink."""
    return os.open(path, flags | os.O_NOFOLLOW, mode)


class SystemGateway:
    """Executes Commands and answers read-only questions about the host.

    Knows nothing about dry-run: the engines decide whether a Command is
    executed here or only described.
    """

    def execute(self, cmd: Command, check: bool = True,
                capture: bool = False):
        if cmd.kind == "exec":
            return subprocess.run(
                list(cmd.args), check=check,
                capture_output=capture, text=capture,
            )
        path = Path(cmd.args[0])
        # Nothing below follows a symlink at the final path component.
        if cmd.kind == "mkdir":
            path.mkdir(parents=True, exist_ok=True)
        elif cmd.kind == "touch":
            os.close(_open_nofollow(path, os.O_WRONLY | os.O_CREAT, 0o644))
        elif cmd.kind == "copy":
            with open(path, "rb") as src:
                fd = _open_nofollow(cmd.args[1],
                                    os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
                with os.fdopen(fd, "wb") as dst:
                    shutil.copyfileobj(src, dst)
        elif cmd.kind == "write":
            fd = _open_nofollow(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
            with os.fdopen(fd, "w") as fh:
                fh.write(cmd.content + "\n")
        elif cmd.kind == "append":
            fd = _open_nofollow(path, os.O_RDWR | os.O_CREAT | os.O_APPEND)
            try:
                size = os.fstat(fd).st_size
                prefix = b""
                if size and os.pread(fd, 1, size - 1) != b"\n":
                    prefix = b"\n"
                os.write(fd, prefix + cmd.content.encode() + b"\n")
            finally:
                os.close(fd)
        elif cmd.kind == "chown":
            os.chown(path, pwd.getpwnam(cmd.args[1]).pw_uid,
                     grp.getgrnam(cmd.args[2]).gr_gid, follow_symlinks=False)
        elif cmd.kind == "chmod":
            # Linux has no lchmod; chmod through an O_NOFOLLOW descriptor.
            fd = _open_nofollow(path, os.O_RDONLY)
            try:
                os.fchmod(fd, cmd.args[1])
            finally:
                os.close(fd)
        elif cmd.kind == "remove":
            path.unlink(missing_ok=True)
        else:
            raise ValueError(f"unknown command kind: {cmd.kind}")
        return None

    # ── queries (always run, dry-run or not) ──────────────────────────────

    def read_text(self, path: Path) -> str:
        with os.fdopen(_open_nofollow(path, os.O_RDONLY), "r") as fh:
            return fh.read()

    def resolve_shell(self, requested: Optional[str] = None) -> str:
        if requested:
            return requested
        for candidate in SHELL_CANDIDATES:
            if os.access(candidate, os.X_OK):
                return candidate
        return FALLBACK_SHELL

    def lookup_user(self, username: str,
                    requested_shell: Optional[str] = None) -> ManagedUser:
        """Return the account as it exists, or the plan for creating it."""
        try:
            pw = pwd.getpwnam(username)
        except KeyError:
            return ManagedUser(
                username=username, exists=False, uid=None, gid=None,
                group=username, home=HOME_ROOT / username,
                shell=self.resolve_shell(requested_shell),
            )
        try:
            group = grp.getgrgid(pw.pw_gid).gr_name
        except KeyError:
            group = str(pw.pw_gid)
        return ManagedUser(
            username=username, exists=True, uid=pw.pw_uid, gid=pw.pw_gid,
            group=group, home=Path(pw.pw_dir), shell=pw.pw_shell,
        )

    def group_members(self, group: str) -> Optional[list]:
        """Supplementary members of *group*, or None if it does not exist."""
        try:
            return list(grp.getgrnam(group).gr_mem)
        except KeyError:
            return None

    def group_gid(self, group: str) -> Optional[int]:
        try:
            return grp.getgrnam(group).gr_gid
        except KeyError:
            return None

    def is_member(self, user: ManagedUser, group: str) -> bool:
        members = self.group_members(group)
        if members is None:
            return False
        if user.username in members:
            return True
        return user.exists and user.gid == self.group_gid(group)

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def selinux_mode(self) -> Optional[str]:
        if not self.which("getenforce"):
            return None
        r = subprocess.run(["getenforce"], capture_output=True, text=True)
        return r.stdout.strip() or None

    def apparmor_present(self) -> bool:
        return self.which("aa-status") is not None


# ── Policy table ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ArtifactPolicy:
    path: Path
    kind: str                       # "dir" or "file"
    mode: int                       # mode applied on create / repair
    owner: str
    group: str
    uid: Optional[int] = None       # None while the account is only planned
    gid: Optional[int] = None
    accepted: tuple = ()
    tolerance: Optional[int] = None
    label: str = ""

    def accepts(self, mode: int) -> bool:
        if mode == self.mode or mode in self.accepted:
            return True
        return self.tolerance is not None and not (mode & ~self.tolerance)

    def owned_by(self, obs: "Observation") -> bool:
        if self.uid is not None and self.gid is not None:
            return (obs.uid, obs.gid) == (self.uid, self.gid)
        return (obs.owner, obs.group) == (self.owner, self.group)


def policy_table(user: ManagedUser) -> list:
    """Managed artifacts under *user*'s home, in creation order."""
    def entry(rel, kind, mode, **kw):
        return ArtifactPolicy(
            path=user.home / rel if rel else user.home,
            kind=kind, mode=mode,
            owner=user.username, group=user.group,
            uid=user.uid, gid=user.gid,
            label=rel or "home", **kw,
        )

    table = [entry("", "dir", 0o750, accepted=(0o700,))]
    kind = user.shell_kind
    for rel in _RC_DIRS.get(kind, ()):
        table.append(entry(rel, "dir", 0o750, tolerance=0o755))
    for rel in kind.rc_files:
        table.append(entry(rel, "file", 0o640, tolerance=0o644))
    table.append(entry(".ssh", "dir", 0o700))
    table.append(entry(".ssh/authorized_keys", "file", 0o600))
    return table


def sudoers_policy(binding: AdminGroupBinding) -> ArtifactPolicy:
    return ArtifactPolicy(
        path=binding.sudoers_path, kind="file", mode=0o440,
        owner="root", group="root", uid=0, gid=0,
        label="sudoers drop-in",
    )


# ── Audit ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Observation:
    uid: int
    gid: int
    owner: str
    group: str
    mode: int
    kind: str
    size: int


def observe(path: Path) -> Optional[Observation]:
    """lstat *path*; None when it is missing.

    A symlink is reported as kind ``symlink``, never as its target.
    PermissionError propagates so callers can tell "cannot inspect" apart
    from "missing".
    """
    try:
        st = os.lstat(path)
    except (FileNotFoundError, NotADirectoryError):
        return None
    try:
        owner = pwd.getpwuid(st.st_uid).pw_name
    except KeyError:
        owner = str(st.st_uid)
    try:
        group = grp.getgrgid(st.st_gid).gr_name
    except KeyError:
        group = str(st.st_gid)
    return Observation(
        uid=st.st_uid, gid=st.st_gid, owner=owner, group=group,
        mode=stat.S_IMODE(st.st_mode),
        kind=_kind_of(st.st_mode),
        size=st.st_size,
    )


def _kind_of(st_mode: int) -> str:
    if stat.S_ISLNK(st_mode):
        return "symlink"
    if stat.S_ISDIR(st_mode):
        return "dir"
    return "file"


@dataclass
class AuditFinding:
    policy: ArtifactPolicy
    observed: Optional[Observation]
    compliant: bool
    severity: str                   # "ok", "warn", "missing" or "unreadable"
    issues: list = field(default_factory=list)


def check_artifact(policy: ArtifactPolicy) -> AuditFinding:
    try:
        obs = observe(policy.path)
    except PermissionError:
        return AuditFinding(policy, None, False, "unreadable",
                            ["cannot inspect (permission denied)"])
    except OSError as exc:
        return AuditFinding(policy, None, False, "unreadable",
                            [f"cannot inspect ({exc.strerror or exc})"])
    if obs is None:
        return AuditFinding(policy, None, False, "missing", ["missing"])
    issues = []
    if obs.kind != policy.kind:
        issues.append(f"is a {obs.kind}, expected a {policy.kind}")
    if not policy.owned_by(obs):
        issues.append(f"owner {obs.owner}:{obs.group}, "
                      f"expected {policy.owner}:{policy.group}")
    if not policy.accepts(obs.mode):
        issues.append(f"mode {obs.mode:o}, expected {policy.mode:o}")
    if issues:
        return AuditFinding(policy, obs, False, "warn", issues)
    return AuditFinding(policy, obs, True, "ok")


@dataclass
class AuditReport:
    user: ManagedUser
    binding: AdminGroupBinding
    findings: list
    admin_group_exists: bool
    in_admin_group: bool
    sudoers_present: bool
    # Listed in the group entry itself; only this can be undone by gpasswd -d.
    supplementary_admin: bool = False
    sudoers_finding: Optional[AuditFinding] = None
    has_plausible_key: bool = False
    selinux: Optional[str] = None
    apparmor: bool = False

    def finding(self, label: str) -> Optional[AuditFinding]:
        for f in self.findings:
            if f.policy.label == label:
                return f
        return None

    @property
    def compliant(self) -> bool:
        return self.user.exists and all(f.compliant for f in self.findings)

    @property
    def authorized_keys_nonempty(self) -> bool:
        f = self.finding(".ssh/authorized_keys")
        return bool(f and f.observed and f.observed.size)


def audit(user: ManagedUser, binding: AdminGroupBinding,
          gateway: SystemGateway) -> AuditReport:
    """Compare the current state of *user* against the policy table.

    Read-only: issues no Command.  Artifacts that cannot be stat'ed are
    reported as ``unreadable`` rather than raising.
    """
    findings = [check_artifact(p) for p in policy_table(user)]

    has_key = False
    ak = user.authorized_keys
    try:
        has_key = bool(PLAUSIBLE_KEY_RE.search(gateway.read_text(ak)))
    except (OSError, UnicodeDecodeError):
        has_key = False

    sudoers_finding = None
    if binding.sudoers_path.exists():
        sudoers_finding = check_artifact(sudoers_policy(binding))

    members = gateway.group_members(binding.group)

    return AuditReport(
        user=user,
        binding=binding,
        findings=findings,
        admin_group_exists=members is not None,
        in_admin_group=gateway.is_member(user, binding.group),
        sudoers_present=sudoers_finding is not None,
        supplementary_admin=user.username in (members or ()),
        sudoers_finding=sudoers_finding,
        has_plausible_key=has_key,
        selinux=gateway.selinux_mode(),
        apparmor=gateway.apparmor_present(),
    )


def _finding_line(f: AuditFinding) -> str:
    obs = f.observed
    if obs is None:
        if f.severity == "unreadable":
            return f"{f.policy.path} cannot be inspected without root"
        return f"{f.policy.path} missing"
    return (f"{f.policy.path} (owner: {obs.owner}:{obs.group} "
            f"perms: {obs.mode:o})")


def print_report(report: AuditReport, dry_run: bool = False) -> None:
    user = report.user
    b = report.binding
    _banner(f"{_I.SHIELD}  Pre-check report — {user.username}")
    _info(f"System: {b.os_name}")
    _info(f"Detected admin group: {b.group}")
    if dry_run:
        _info("Dry-run: no changes will be made")

    if user.exists:
        _info(f"{_I.USERS}  User exists (uid: {user.uid} gid: {user.gid} "
              f"shell: {user.shell})")
    else:
        _warn(f"{_I.USERS}  User does NOT exist. Planned home: {user.home} "
              f"shell: {user.shell}")

    for f in report.findings:
        if f.severity == "ok":
            _info(_finding_line(f))
        elif f.severity == "warn":
            _warn(_finding_line(f))
            for issue in f.issues:
                _warn(f"  ↳ {issue}")
        else:
            _skip(_finding_line(f))

    ak = report.finding(".ssh/authorized_keys")
    if ak and ak.observed is not None:
        if report.has_plausible_key:
            _info(f"{_I.KEY}  authorized_keys contains at least one plausible public key")
        else:
            _warn(f"{_I.KEY}  No recognizable SSH public key in authorized_keys")

    if report.selinux:
        _info(f"SELinux: {report.selinux}")
    if report.apparmor:
        _info("AppArmor present")

    if not report.admin_group_exists:
        _warn(f"Admin group {b.group} does not exist on this system")
    elif report.in_admin_group:
        _info(f"{user.username} is in admin group ({b.group})")
    else:
        _skip(f"{user.username} is NOT in admin group ({b.group})")

    if report.sudoers_finding is not None:
        f = report.sudoers_finding
        if f.compliant:
            _info(f"Passwordless sudo file exists: {f.policy.path}")
        else:
            _warn(f"Passwordless sudo file exists: {_finding_line(f)}")
            for issue in f.issues:
                _warn(f"  ↳ {issue}")
    else:
        _skip(f"Passwordless sudo not configured for {b.group}")


# ── Intents and results ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class ApplyIntent:
    pubkey: Optional[PublicKey] = None
    replace_key: bool = False
    grant_admin: bool = False
    grant_nopasswd: bool = False
    shell: Optional[str] = None
    dry_run: bool = False

    @property
    def key_only(self) -> bool:
        """True when installing a key is the only thing asked for."""
        return (self.pubkey is not None
                and not self.grant_admin and not self.grant_nopasswd)


@dataclass(frozen=True)
class CleanupIntent:
    remove_home: bool = False
    remove_nopasswd: bool = False
    dry_run: bool = False


@dataclass
class ApplyResult:
    username: str
    dry_run: bool = False
    created: bool = False
    # written, appended, replaced, present, invalid, or unreadable (dry run
    # without root)
    key_action: str = "skipped"
    backup: Optional[Path] = None
    granted_admin: bool = False
    sudoers_written: bool = False
    commands: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)


@dataclass
class CleanupResult:
    username: str
    dry_run: bool = False
    user_missing: bool = False
    removed_from_group: bool = False
    deleted: bool = False
    sudoers_removed: bool = False
    commands: list = field(default_factory=list)
    warnings: list = field(default_factory=list)


# ── Provisioner ──────────────────────────────────────────────────────────────

class Provisioner:
    """Reconciles one account toward the policy table, or removes it.

    Accepts only fully-resolved intents and never prompts.
    """

    def __init__(self, binding: AdminGroupBinding,
                 gateway: Optional[SystemGateway] = None,
                 backup_dir: Path = BACKUP_DIR, skel_dir: Path = SKEL_DIR,
                 quiet: bool = False):
        self.binding = binding
        self.gateway = gateway or SystemGateway()
        self.backup_dir = Path(backup_dir)
        self.skel_dir = Path(skel_dir)
        self.quiet = quiet
        self.dry_run = False
        self._record = None

    # ── helpers ───────────────────────────────────────────────────────────

    def run_cmd(self, cmd: Command, check: bool = True, capture: bool = False):
        """Execute *cmd* through the gateway, or print it if dry-run.

        With quiet the "Running:" echo is suppressed; [DRY RUN] lines are
        never suppressed.
        """
        pretty = cmd.describe()
        if self._record is not None:
            self._record.append(pretty)
        if self.dry_run:
            _dry(pretty)
            return None
        if not self.quiet:
            _info(f"Running: {pretty}")
        result = self.gateway.execute(cmd, check=check, capture=capture)
        if cmd.kind == "exec" and not check and result.returncode != 0:
            _warn(f"  ↳ exited {result.returncode}: {pretty}")
        return result

    def _note(self, msg: str) -> None:
        _info(msg)
        log.info(msg)

    def _skip_note(self, msg: str) -> None:
        _skip(msg)
        log.info(msg)

    def _warning(self, result, msg: str) -> None:
        _warn(msg)
        log.warning(msg)
        result.warnings.append(msg)

    def _ensure_artifact(self, policy: ArtifactPolicy,
                         source: Optional[Path] = None) -> bool:
        """Create *policy.path* if missing, then fix its owner and mode.

        Existing files are never rewritten.  Returns True when created.
        """
        try:
            obs = observe(policy.path)
        except PermissionError:
            if not self.dry_run:
                raise
            self._skip_note(f"Cannot inspect {policy.path} without root; "
                            "no changes planned for it")
            return False
        if obs is not None and obs.kind == "symlink":
            raise SshProvError(
                f"{policy.path} is a symbolic link; refusing to modify it"
            )
        if obs is not None and obs.kind != policy.kind:
            raise SshProvError(
                f"{policy.path} exists but is not a {policy.kind}"
            )
        if obs is None:
            if policy.kind == "dir":
                self.run_cmd(Command.mkdir(policy.path))
            elif source is not None and source.is_file():
                self.run_cmd(Command.copy(source, policy.path))
            else:
                self.run_cmd(Command.touch(policy.path))
            self.run_cmd(Command.chown(policy.path, policy.owner, policy.group))
            self.run_cmd(Command.chmod(policy.path, policy.mode))
            return True
        if not policy.owned_by(obs):
            self.run_cmd(Command.chown(policy.path, policy.owner, policy.group))
        if not policy.accepts(obs.mode):
            self.run_cmd(Command.chmod(policy.path, policy.mode))
        return False

    def _backup_path(self, username: str) -> Path:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        path = self.backup_dir / f"{username}_authorized_keys_{stamp}.bak"
        n = 1
        while path.exists():
            path = self.backup_dir / f"{username}_authorized_keys_{stamp}-{n}.bak"
            n += 1
        return path

    # ── apply ─────────────────────────────────────────────────────────────

    def apply(self, username: str, intent: ApplyIntent) -> ApplyResult:
        result = ApplyResult(username=username, dry_run=intent.dry_run)
        self.dry_run = intent.dry_run
        self._record = result.commands

        key = intent.pubkey
        if key is not None and not key.valid:
            shown = key.short() or "empty"
            if intent.key_only:
                raise ValidationError(
                    f"Invalid public key for {username}: {shown}"
                )
            msg = (f"Provided public key doesn't look valid ({shown}); "
                   "skipping key install")
            _error(msg)
            log.error(msg)
            result.errors.append(msg)
            result.key_action = "invalid"
            key = None

        suffix = " (dry run)" if intent.dry_run else ""
        log.info("APPLY: starting for user %s%s", username, suffix)

        user = self._ensure_account(username, intent, result)
        policies = {p.label: p for p in policy_table(user)}

        self._ensure_artifact(policies["home"])
        self._ensure_rc_files(user, policies)
        self._ensure_artifact(policies[".ssh"])
        self._ensure_artifact(policies[".ssh/authorized_keys"])

        if key is not None:
            self._install_key(user, key, intent.replace_key,
                              policies[".ssh/authorized_keys"], result)
        elif intent.pubkey is None:
            self._skip_note("No public key provided; skipping key install")

        self._restore_context(user, result)

        if intent.grant_admin:
            self._grant_admin(user, result)
        if intent.grant_nopasswd:
            self._grant_nopasswd(result)

        self._note(f"APPLY: complete for {username}")
        return result

    def _ensure_account(self, username: str, intent: ApplyIntent,
                        result: ApplyResult) -> ManagedUser:
        user = self.gateway.lookup_user(username, intent.shell)
        if user.exists:
            self._note(f"{_I.USERS}  User {username} already exists")
            if intent.shell and intent.shell != user.shell:
                self._warning(
                    result,
                    f"--shell {intent.shell} ignored: {username} already "
                    f"uses {user.shell}",
                )
            return user

        self.run_cmd(Command.exec(
            "useradd", "--create-home", "--shell", user.shell, username,
        ))
        self.run_cmd(Command.exec("passwd", "-l", username))
        result.created = True
        self._note(f"{_I.USERS}  Created user {username} with shell "
                   f"{user.shell}; password locked")
        if self.dry_run:
            return user
        created = self.gateway.lookup_user(username)
        if not created.exists:
            raise SshProvError(f"useradd reported success but {username} "
                               "is not in the passwd database")
        return created

    def _ensure_rc_files(self, user: ManagedUser, policies: dict) -> None:
        kind = user.shell_kind
        for rel in _RC_DIRS.get(kind, ()):
            self._ensure_artifact(policies[rel])
        for rel in kind.rc_files:
            source = self.skel_dir / rel
            if self._ensure_artifact(policies[rel], source=source):
                log.info("Created %s", user.home / rel)

    def _install_key(self, user: ManagedUser, key: PublicKey, replace: bool,
                     policy: ArtifactPolicy, result: ApplyResult) -> None:
        ak = user.authorized_keys
        try:
            current = self.gateway.read_text(ak)
        except FileNotFoundError:
            current = ""
        except PermissionError:
            if not self.dry_run:
                raise
            result.key_action = "unreadable"
            self._skip_note(f"Cannot read {ak} without root; key step "
                            "not planned")
            return

        if current and replace:
            backup = self._backup_path(user.username)
            if not self.backup_dir.exists():
                self.run_cmd(Command.mkdir(self.backup_dir))
            self.run_cmd(Command.copy(ak, backup))
            self.run_cmd(Command.chmod(backup, 0o600))
            result.backup = backup
            self._note(f"Backup of authorized_keys saved at {backup}")
            self.run_cmd(Command.write(ak, key.raw))
            result.key_action = "replaced"
            self._note(f"{_I.KEY}  Replaced authorized_keys for {user.username}")
        elif current:
            if key.raw in current.splitlines():
                result.key_action = "present"
                self._skip_note(f"Key already present in {ak}")
                return
            self.run_cmd(Command.append(ak, key.raw))
            result.key_action = "appended"
            self._note(f"{_I.KEY}  Appended key to {ak}")
        else:
            self.run_cmd(Command.write(ak, key.raw))
            result.key_action = "written"
            self._note(f"{_I.KEY}  Wrote new authorized_keys for {user.username}")

        self.run_cmd(Command.chown(ak, policy.owner, policy.group))
        self.run_cmd(Command.chmod(ak, 0o600))

    def _restore_context(self, user: ManagedUser, result) -> None:
        if not self.gateway.which("restorecon"):
            self._skip_note("restorecon not available; skipping SELinux "
                            "context restore")
            return
        try:
            r = self.run_cmd(Command.exec("restorecon", "-R", user.home),
                             check=False)
        except OSError as exc:
            self._warning(result, f"restorecon failed on {user.home}: {exc}")
            return
        if r is not None and r.returncode != 0:
            self._warning(result, f"restorecon exited {r.returncode} on "
                                  f"{user.home}; continuing")
            return
        log.info("restorecon run on %s", user.home)

    def _grant_admin(self, user: ManagedUser, result: ApplyResult) -> None:
        group = self.binding.group
        if self.gateway.group_members(group) is None:
            self._warning(result, f"Admin group {group} does not exist; "
                                  "skipping group add")
            return
        if self.gateway.is_member(user, group):
            self._skip_note(f"{user.username} already in {group}")
            return
        self.run_cmd(Command.exec("usermod", "-aG", group, user.username))
        result.granted_admin = True
        self._note(f"Added {user.username} to {group}")

    def _grant_nopasswd(self, result: ApplyResult) -> None:
        b = self.binding
        path = b.sudoers_path
        if path.exists():
            self._skip_note(f"Passwordless sudo already configured at {path}")
            return

        self.run_cmd(Command.write(path, b.sudoers_rule))
        try:
            r = self.run_cmd(Command.exec("visudo", "-cf", path),
                             check=False, capture=True)
        except OSError as exc:
            self.run_cmd(Command.remove(path))
            msg = f"visudo could not validate {path} ({exc}); removed it"
            raise SudoersValidationError(msg) from exc
        if r is not None and r.returncode != 0:
            self.run_cmd(Command.remove(path))
            detail = (r.stderr or r.stdout or "").strip()
            msg = f"visudo check failed for {path}; removed it"
            if detail:
                msg += f": {detail}"
            raise SudoersValidationError(msg)
        self.run_cmd(Command.chmod(path, 0o440))
        result.sudoers_written = True
        self._note(f"Created {path} (passwordless sudo for %{b.group})")

    # ── cleanup ───────────────────────────────────────────────────────────

    def cleanup(self, username: str, intent: CleanupIntent) -> CleanupResult:
        result = CleanupResult(username=username, dry_run=intent.dry_run)
        self.dry_run = intent.dry_run
        self._record = result.commands
        group = self.binding.group

        suffix = " (dry run)" if intent.dry_run else ""
        log.info("CLEANUP: starting for user %s%s", username, suffix)

        user = self.gateway.lookup_user(username)
        if user.exists:
            members = self.gateway.group_members(group) or []
            if username in members:
                self._leave_group(username, group, result)
            else:
                self._skip_note(f"{username} is not a member of {group}")

            argv = ["userdel"]
            if intent.remove_home:
                argv.append("-r")
            argv.append(username)
            r = self.run_cmd(Command.exec(*argv), check=False)
            if r is not None and r.returncode != 0:
                self._warning(result, f"userdel exited {r.returncode} for "
                                      f"{username}")
            else:
                result.deleted = True
                what = " and home directory" if intent.remove_home else ""
                self._note(f"{_I.TRASH}  Deleted user {username}{what}")
        else:
            result.user_missing = True
            self._skip_note(f"User {username} does not exist; skipping "
                            "account deletion")

        if intent.remove_nopasswd:
            path = self.binding.sudoers_path
            if path.exists():
                self.run_cmd(Command.remove(path))
                result.sudoers_removed = True
                self._note(f"Removed {path} (affects every member of {group})")
            else:
                self._skip_note(f"No passwordless sudo drop-in at {path}")

        self._note(f"CLEANUP: complete for {username}")
        return result

    def _leave_group(self, username: str, group: str,
                     result: CleanupResult) -> None:
        try:
            r = self.run_cmd(Command.exec("gpasswd", "-d", username, group),
                             check=False)
        except OSError as exc:
            self._warning(result, f"Could not remove {username} from "
                                  f"{group} ({exc}); continuing")
            return
        if r is not None and r.returncode != 0:
            self._warning(result, f"Could not remove {username} from "
                                  f"{group}; continuing")
            return
        result.removed_from_group = True
        self._note(f"Removed {username} from {group}")


# ── Input resolution ─────────────────────────────────────────────────────────

def _ask(prompt: str) -> str:
    """Blocking prompt; EOF or Ctrl-C aborts the run with exit 0."""
    try:
        return input(prompt).strip()
    except (EOFError, KeyboardInterrupt):
        print()
        _info("Aborted.")
        sys.exit(0)


def resolve_username(value: Optional[str]) -> str:
    username = (value or "").strip()
    while not username:
        username = _ask("  Enter username to create/manage: ")
        if not username:
            _warn("Username cannot be empty.")
    return username


def resolve_pubkey(value: Optional[str], username: str,
                   interactive: bool) -> Optional[PublicKey]:
    """Key from the flag as given, else prompted until valid or blank."""
    if value is not None:
        return PublicKey.parse(value)
    if not interactive:
        return None
    while True:
        raw = _ask(f"  Paste PUBLIC SSH key for '{username}' "
                   "(blank to skip): ")
        if not raw:
            return None
        key = PublicKey.parse(raw)
        if key.valid:
            return key
        _warn("Invalid or unsupported SSH key format.")


def resolve_replace(flag: bool, key: Optional[PublicKey], report: AuditReport,
                    interactive: bool) -> bool:
    if flag or key is None or not key.valid or not interactive:
        return flag
    if not report.authorized_keys_nonempty:
        return False
    _warn(f"'{report.user.username}' already has SSH keys configured.")
    while True:
        answer = _ask("  Type [a] to Append or [r] to Replace existing keys [a]: ")
        answer = answer.lower()
        if answer in ("", "a"):
            return False
        if answer == "r":
            return True


def resolve_admin(flag: bool, report: AuditReport, interactive: bool) -> bool:
    if flag or not interactive or report.in_admin_group:
        return flag
    answer = _ask(f"  Add '{report.user.username}' to the "
                  f"'{report.binding.group}' group? [y/N] ")
    return answer.lower() == "y"


def resolve_nopasswd(flag: bool, report: AuditReport, interactive: bool) -> bool:
    if flag or not interactive or report.sudoers_present:
        return flag
    answer = _ask(f"  Grant passwordless sudo to every member of "
                  f"'{report.binding.group}'? [y/N] ")
    return answer.lower() == "y"


def _confirm(lines: list, yes: bool, dry_run: bool) -> None:
    """Print what will happen and ask for confirmation.

    Exits immediately if the user declines.  Skipped when --yes or
    --dry-run are active.
    """
    if yes or dry_run:
        return
    print()
    print(f"  {_C.BOLD}About to:{_C.RESET}")
    for line in lines:
        print(f"    • {line}")
    print()
    answer = _ask("  Proceed? [y/N] ").lower()
    if answer != "y":
        _info("Aborted; no changes made.")
        sys.exit(0)
    print()


def describe_apply(username: str, intent: ApplyIntent, report: AuditReport) -> list:
    lines = []
    user = report.user
    if user.exists:
        lines.append(f"Reconcile home, rc files and ~/.ssh for existing user {username}")
    else:
        lines.append(f"Create user {username} (shell {user.shell}) with a locked password")
    key = intent.pubkey
    if key is not None and key.valid:
        how = "Replace authorized_keys with" if intent.replace_key else "Install"
        lines.append(f"{how} key {key.short()}")
    if intent.grant_admin:
        lines.append(f"Add {username} to {report.binding.group}")
    if intent.grant_nopasswd and not report.sudoers_present:
        lines.append(f"Write {report.binding.sudoers_path} "
                     f"({report.binding.sudoers_rule})")
    return lines


def describe_cleanup(username: str, intent: CleanupIntent,
                     report: AuditReport) -> list:
    lines = []
    if report.user.exists:
        if report.supplementary_admin:
            lines.append(f"Remove {username} from {report.binding.group}")
        home = " and its home directory" if intent.remove_home else ""
        lines.append(f"Delete user {username}{home}")
    else:
        lines.append(f"Nothing to delete: {username} does not exist")
    if intent.remove_nopasswd:
        lines.append(f"Remove {report.binding.sudoers_path} "
                     f"(affects all of %{report.binding.group})")
    return lines


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sshprov",
        description="Audit, provision or remove an SSH key-only local user.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  sudo sshprov --username alice --pubkey 'ssh-ed25519 AAAA...'    # audit, confirm, apply
  sudo sshprov --username alice --pubkey 'ssh-ed25519 AAAA...' --admin --nopasswd -y
  sudo sshprov --username alice --pubkey 'ssh-rsa AAAA...' --replace-key
  sshprov --username alice --dry-run                               # audit + planned commands
  sudo sshprov --cleanup --username alice --remove-home --remove-nopasswd
""",
    )
    p.add_argument("--username", metavar="USER",
                   help="account to audit/manage (prompted when omitted)")
    p.add_argument("--pubkey", metavar="KEY",
                   help="public SSH key to install (quote it)")
    p.add_argument("--replace-key", action="store_true",
                   help="replace existing authorized_keys instead of appending "
                        "(a backup is kept)")
    p.add_argument("--admin", action="store_true",
                   help="add the user to the detected admin group "
                        "(asked interactively otherwise)")
    p.add_argument("--nopasswd", action="store_true",
                   help="grant passwordless sudo to the admin group via a "
                        "sudoers drop-in")
    p.add_argument("--shell", metavar="PATH",
                   help="login shell for a newly created user")
    p.add_argument("--cleanup", action="store_true",
                   help="remove the user instead of provisioning it")
    p.add_argument("--remove-home", action="store_true",
                   help="with --cleanup: also delete the home directory")
    p.add_argument("--remove-nopasswd", action="store_true",
                   help="with --cleanup: also delete the admin group's "
                        "passwordless sudo drop-in")
    p.add_argument("-y", "--yes", action="store_true",
                   help="non-interactive: skip prompts and confirmation")
    p.add_argument("--dry-run", action="store_true",
                   help="print commands without executing them")
    p.add_argument("-q", "--quiet", action="store_true",
                   help="suppress per-command output; warnings and errors "
                        "still print")
    p.add_argument("--log-file", type=Path, default=LOG_FILE, metavar="PATH",
                   help=f"operation log (default: {LOG_FILE})")
    p.add_argument("--backup-dir", type=Path, default=BACKUP_DIR,
                   metavar="PATH",
                   help=f"where replaced authorized_keys are saved "
                        f"(default: {BACKUP_DIR})")
    return p


def require_root(dry_run: bool) -> None:
    if os.geteuid() != 0 and not dry_run:
        raise PrivilegeError("sshprov must run as root (try: sudo sshprov ...)")


def _print_apply_summary(result: ApplyResult, elapsed: float) -> None:
    if result.dry_run:
        _banner(f"{_I.EYE}  Dry run complete ({int(elapsed)}s): "
                f"{len(result.commands)} command(s) would run")
        return
    _banner(f"{_I.CHECK}  Setup complete for {result.username} ({int(elapsed)}s)")
    _info(f"Account:  {'created' if result.created else 'already present'}")
    _info(f"Key:      {result.key_action}")
    if result.backup is not None:
        _info(f"Backup:   {result.backup}")
    if result.granted_admin:
        _info("Admin:    group membership granted")
    if result.sudoers_written:
        _info("Sudo:     passwordless drop-in written")
    for msg in result.errors:
        _error(msg)
    for msg in result.warnings:
        _warn(msg)


def _print_cleanup_summary(result: CleanupResult, elapsed: float) -> None:
    if result.dry_run:
        _banner(f"{_I.EYE}  Dry run complete ({int(elapsed)}s): "
                f"{len(result.commands)} command(s) would run")
        return
    _banner(f"{_I.CHECK}  Cleanup complete for {result.username} ({int(elapsed)}s)")
    if result.user_missing:
        _info("Account:  did not exist")
    else:
        _info(f"Account:  {'deleted' if result.deleted else 'NOT deleted'}")
    if result.sudoers_removed:
        _info("Sudo:     passwordless drop-in removed")
    for msg in result.warnings:
        _warn(msg)


def _run_apply(args, username: str, provisioner: Provisioner,
               report: AuditReport, interactive: bool) -> ApplyResult:
    key = resolve_pubkey(args.pubkey, username, interactive)
    intent = ApplyIntent(
        pubkey=key,
        replace_key=resolve_replace(args.replace_key, key, report, interactive),
        grant_admin=resolve_admin(args.admin, report, interactive),
        grant_nopasswd=resolve_nopasswd(args.nopasswd, report, interactive),
        shell=args.shell,
        dry_run=args.dry_run,
    )
    if intent.replace_key and key is None:
        _warn("--replace-key has no effect without --pubkey")
    _confirm(describe_apply(username, intent, report), args.yes, args.dry_run)
    if args.yes and not args.dry_run:
        log.info("--yes provided; applying fixes non-interactively")

    _banner(f"{_I.ROCKET}  Applying for {username}")
    return provisioner.apply(username, intent)


def _run_cleanup(args, username: str, provisioner: Provisioner,
                 report: AuditReport) -> CleanupResult:
    intent = CleanupIntent(
        remove_home=args.remove_home,
        remove_nopasswd=args.remove_nopasswd,
        dry_run=args.dry_run,
    )
    _confirm(describe_cleanup(username, intent, report), args.yes, args.dry_run)
    _banner(f"{_I.UNDO}  Cleanup for {username}")
    return provisioner.cleanup(username, intent)


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.cleanup and (args.remove_home or args.remove_nopasswd):
        parser.error("--remove-home and --remove-nopasswd require --cleanup")

    try:
        require_root(args.dry_run)
    except PrivilegeError as exc:
        _error(str(exc))
        return 1

    t0 = time.monotonic()
    handler = setup_logging(args.log_file)
    try:
        binding = detect_admin_binding()
        _info(f"Default admin group detected: {binding.group}")
        username = resolve_username(args.username)

        gateway = SystemGateway()
        provisioner = Provisioner(binding, gateway, backup_dir=args.backup_dir,
                                  quiet=args.quiet)
        user = gateway.lookup_user(username, args.shell)
        report = audit(user, binding, gateway)
        print_report(report, dry_run=args.dry_run)

        interactive = not (args.yes or args.dry_run)
        if args.cleanup:
            result = _run_cleanup(args, username, provisioner, report)
            _print_cleanup_summary(result, time.monotonic() - t0)
        else:
            result = _run_apply(args, username, provisioner, report, interactive)
            _print_apply_summary(result, time.monotonic() - t0)
    except (SshProvError, subprocess.CalledProcessError, OSError) as exc:
        _error(str(exc))
        log.error("FAILED: %s", exc)
        return 1
    finally:
        if handler is not None:
            log.removeHandler(handler)
            handler.close()

    if handler is not None and not args.dry_run:
        _info(f"Details in {args.log_file}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
