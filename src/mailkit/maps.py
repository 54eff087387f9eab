"""Postfix lookup table text files.

Three shapes of file make up the Postfix side of the directory:

- ``PostfixMap``: ``hash:`` source tables, one ``key<whitespace>value`` per
  line, compiled by ``postmap`` (``virtual``, ``vmailbox``)
- ``RegexpMap``: ``regexp:`` tables, one ``/pattern/flags value`` per line,
  read by Postfix as text (``virtual_regexp``)
- ``DomainList``: a plain one-domain-per-line list (``virtual_domains``)

Comments, blank lines and lines mailkit does not understand are written
back unchanged.
"""

import re
from dataclasses import dataclass
from pathlib import Path

from mailkit.locking import atomic_write

MAP_SEPARATOR = "    "
_REGEXP_LINE = re.compile(r"^(/(?:\\.|[^/\\])*/[A-Za-z]*)\s+(\S.*)$")


@dataclass
class _Line:
    raw: str | None
    key: str | None = None
    value: str | None = None

    def render(self) -> str:
        if self.raw is not None:
            return self.raw
        return f"{self.key}{MAP_SEPARATOR}{self.value}"


def _split_targets(value: str) -> list[str]:
    return [t.lower() for t in re.split(r"[\s,]+", value.strip()) if t]


class _TextTable:
    """Shared load/save and lookup logic for key/value text tables."""

    case_insensitive_keys = True

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lines: list[_Line] = []
        self.load()

    def _parse(self, line: str) -> tuple[str, str] | None:
        raise NotImplementedError

    def _norm(self, key: str) -> str:
        return key.lower() if self.case_insensitive_keys else key

    def load(self) -> None:
        self._lines = []
        if not self.path.exists():
            return
        for line in self.path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                self._lines.append(_Line(raw=line))
                continue
            # Leading whitespace continues the previous logical line
            if line[:1].isspace() and self._lines and self._lines[-1].key is not None:
                prev = self._lines[-1]
                prev.value = f"{prev.value} {stripped}"
                prev.raw = None
                continue
            parsed = self._parse(line)
            if parsed is None:
                self._lines.append(_Line(raw=line))
            else:
                key, value = parsed
                self._lines.append(_Line(raw=line, key=key, value=value))

    def render(self) -> str:
        if not self._lines:
            return ""
        return "\n".join(line.render() for line in self._lines) + "\n"

    def save(self) -> None:
        atomic_write(self.path, self.render())

    def _find(self, key: str) -> _Line | None:
        wanted = self._norm(key)
        for line in self._lines:
            if line.key is not None and self._norm(line.key) == wanted:
                return line
        return None

    def get(self, key: str) -> str | None:
        line = self._find(key)
        return line.value if line else None

    def __contains__(self, key: str) -> bool:
        return self._find(key) is not None

    def set(self, key: str, value: str) -> bool:
        """Set ``key`` in place or append it. Returns True if anything changed."""
        line = self._find(key)
        if line is None:
            self._lines.append(_Line(raw=None, key=key, value=value))
            return True
        if line.value == value:
            return False
        line.value = value
        line.raw = None
        return True

    def remove(self, key: str) -> bool:
        line = self._find(key)
        if line is None:
            return False
        self._lines.remove(line)
        return True

    def items(self) -> list[tuple[str, str]]:
        return [(line.key, line.value) for line in self._lines if line.key is not None]  # type: ignore[misc]

    def keys(self) -> list[str]:
        return [key for key, _ in self.items()]

    def keys_for_value(self, target: str) -> list[str]:
        """Keys whose value names ``target`` as one of its addresses (exact match)."""
        wanted = target.strip().lower()
        return [key for key, value in self.items() if wanted in _split_targets(value)]


class PostfixMap(_TextTable):
    """A ``hash:`` source table such as ``virtual`` or ``vmailbox``."""

    def _parse(self, line: str) -> tuple[str, str] | None:
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            return None
        return parts[0], parts[1].strip()

    @property
    def db_path(self) -> Path:
        return self.path.with_name(self.path.name + ".db")


class RegexpMap(_TextTable):
    """A ``regexp:`` table keyed by the ``/pattern/flags`` text."""

    case_insensitive_keys = False

    def _parse(self, line: str) -> tuple[str, str] | None:
        match = _REGEXP_LINE.match(line.strip())
        if not match:
            return None
        return match.group(1), match.group(2).strip()


class DomainList:
    """One domain (or wildcard pattern) per line."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lines: list[str] = []
        self.load()

    def load(self) -> None:
        self._lines = []
        if self.path.exists():
            self._lines = self.path.read_text(encoding="utf-8").splitlines()

    def domains(self) -> list[str]:
        result = []
        for line in self._lines:
            stripped = line.strip()
            if stripped and not stripped.startswith("#"):
                result.append(stripped.split()[0].lower())
        return result

    def __contains__(self, domain: str) -> bool:
        return domain.lower() in self.domains()

    def add(self, domain: str) -> bool:
        if domain in self:
            return False
        self._lines.append(domain.lower())
        return True

    def remove(self, domain: str) -> bool:
        wanted = domain.lower()
        kept = [
            line for line in self._lines
            if not (line.strip() and line.strip().split()[0].lower() == wanted)
        ]
        changed = len(kept) != len(self._lines)
        self._lines = kept
        return changed

    def save(self) -> None:
        atomic_write(self.path, "\n".join(self._lines) + "\n" if self._lines else "")


# Wildcard redirect domains


def is_wildcard(pattern: str) -> bool:
    return "*" in pattern


def _wildcard_body(pattern: str) -> str:
    return "[^@]+".join(part.replace(".", r"\.") for part in pattern.lower().split("*"))


def wildcard_to_regex(pattern: str) -> str:
    """Compile ``*.example.com`` into a Postfix ``regexp:`` key.

    The expression matches a full address (alias lookup) as well as a bare
    domain (``virtual_alias_domains`` lookup), so one table serves both.
    """
    return f"/^([^@]+@)?{_wildcard_body(pattern)}$/"


def wildcard_matches(pattern: str, domain: str) -> bool:
    """True if ``domain`` falls under the wildcard ``pattern``."""
    return re.fullmatch(_wildcard_body(pattern), domain.lower(), flags=re.IGNORECASE) is not None
