"""Dovecot passwd-file user database (``/etc/dovecot/users``)."""

from dataclasses import dataclass, field
from pathlib import Path

from mailkit.locking import atomic_write

QUOTA_FIELD = "userdb_quota_rule"


@dataclass
class UserEntry:
    """One ``user:password:uid:gid:gecos:home:shell:extra_fields`` line."""

    user: str
    password: str
    uid: str = ""
    gid: str = ""
    gecos: str = ""
    home: str = ""
    shell: str = ""
    extra: list[str] = field(default_factory=list)

    @classmethod
    def from_line(cls, line: str) -> "UserEntry":
        # extra_fields may themselves contain colons (quota rules), so split
        # at most seven times.
        parts = line.split(":", 7)
        parts += [""] * (8 - len(parts))
        return cls(
            user=parts[0],
            password=parts[1],
            uid=parts[2],
            gid=parts[3],
            gecos=parts[4],
            home=parts[5],
            shell=parts[6],
            extra=parts[7].split(),
        )

    def to_line(self) -> str:
        return ":".join(
            [
                self.user,
                self.password,
                self.uid,
                self.gid,
                self.gecos,
                self.home,
                self.shell,
                " ".join(self.extra),
            ]
        )

    @property
    def domain(self) -> str:
        return self.user.rsplit("@", 1)[1] if "@" in self.user else ""

    @property
    def quota(self) -> str | None:
        prefix = f"{QUOTA_FIELD}=*:storage="
        for item in self.extra:
            if item.startswith(prefix):
                return item[len(prefix):]
        return None

    @quota.setter
    def quota(self, value: str | None) -> None:
        self.extra = [item for item in self.extra if not item.startswith(f"{QUOTA_FIELD}=")]
        if value:
            self.extra.append(f"{QUOTA_FIELD}=*:storage={value}")


class UserDB:
    """Read/modify/write access to a Dovecot passwd-file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lines: list[str | UserEntry] = []
        self.load()

    def load(self) -> None:
        self._lines = []
        if not self.path.exists():
            return
        for line in self.path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or ":" not in stripped:
                self._lines.append(line)
            else:
                self._lines.append(UserEntry.from_line(stripped))

    def entries(self) -> list[UserEntry]:
        return [line for line in self._lines if isinstance(line, UserEntry)]

    def addresses(self) -> list[str]:
        return [entry.user for entry in self.entries()]

    def domains(self) -> list[str]:
        return sorted({entry.domain for entry in self.entries() if entry.domain})

    def get(self, user: str) -> UserEntry | None:
        wanted = user.lower()
        for entry in self.entries():
            if entry.user.lower() == wanted:
                return entry
        return None

    def __contains__(self, user: str) -> bool:
        return self.get(user) is not None

    def add(self, entry: UserEntry) -> None:
        if entry.user in self:
            raise KeyError(entry.user)
        self._lines.append(entry)

    def update(self, entry: UserEntry) -> None:
        """Replace the stored entry with the same user name."""
        current = self.get(entry.user)
        if current is None:
            raise KeyError(entry.user)
        self._lines[self._lines.index(current)] = entry

    def remove(self, user: str) -> bool:
        entry = self.get(user)
        if entry is None:
            return False
        self._lines.remove(entry)
        return True

    def render(self) -> str:
        if not self._lines:
            return ""
        return "\n".join(
            line.to_line() if isinstance(line, UserEntry) else line for line in self._lines
        ) + "\n"

    def save(self) -> None:
        # Password hashes live here; never widen the mode of a new file.
        mode = None if self.path.exists() else 0o600
        atomic_write(self.path, self.render(), mode=mode)
