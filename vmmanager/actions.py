"""Startup action registry and its persisted encoding.

A startup action is a named shell command that runs verbatim inside the guest
through the dispatcher script. The mapping is owned by a loaded
:class:`~vmmanager.models.VMRecord`; nothing here is shared process-wide.

Two encodings exist on disk:

* ``v2`` (written): ``#v2:`` followed by netstring pairs
  ``<len>:<key>,<len>:<value>,`` in sorted key order. Lengths count
  characters, so any value round-trips unchanged. ``#`` cannot start an
  action name, so the marker never collides with a legacy first key.
* legacy (read only): ``key:COMMAND:value`` entries joined by
  ``|SEPARATOR|`` with backslashes and double quotes backslash-escaped.

Decoded names that fail :func:`validate_action_name` are dropped with a
warning; they would otherwise become file paths inside the guest.
"""

from __future__ import annotations

import subprocess
from typing import Dict, Iterator, List, Optional, Tuple

from vmmanager.constants import NAME_RE, NUMBER_RE
from vmmanager.exceptions import ManagerError, NotFoundError, ValidationError
from vmmanager.utils import log

ENCODING_PREFIX = "#v2:"
LEGACY_ENTRY_SEPARATOR = "|SEPARATOR|"
LEGACY_KEY_SEPARATOR = ":COMMAND:"


def validate_action_name(name: str) -> str:
    if not name:
        raise ValidationError("Command name cannot be empty")
    if not NAME_RE.match(name):
        raise ValidationError(
            "Command name can only contain letters, numbers, hyphens, and underscores"
        )
    return name


def _netstring(value: str) -> str:
    return f"{len(value)}:{value},"


def serialize(mapping: Dict[str, str]) -> str:
    """Encode a startup action mapping for a single record field."""
    if not mapping:
        return ""
    parts = [ENCODING_PREFIX]
    for key in sorted(mapping):
        parts.append(_netstring(key))
        parts.append(_netstring(mapping[key]))
    return "".join(parts)


def _read_netstring(data: str, pos: int) -> Tuple[str, int]:
    colon = data.find(":", pos)
    if colon == -1 or colon == pos:
        raise ManagerError(f"Corrupt startup command encoding at offset {pos}")
    length_raw = data[pos:colon]
    if not NUMBER_RE.match(length_raw):
        raise ManagerError(f"Corrupt startup command length '{length_raw}' at offset {pos}")
    start = colon + 1
    end = start + int(length_raw)
    if data[end:end + 1] != ",":
        raise ManagerError(f"Truncated startup command entry at offset {pos}")
    return data[start:end], end + 1


def _deserialize_v2(body: str) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    pos = 0
    while pos < len(body):
        key, pos = _read_netstring(body, pos)
        value, pos = _read_netstring(body, pos)
        mapping[key] = value
    return mapping


def legacy_unescape(field: str) -> str:
    """Undo the legacy backslash/quote escaping in a single left-to-right pass."""
    out: List[str] = []
    chars = iter(field)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, None)
            if nxt is None:
                out.append(ch)
            elif nxt in ('\\', '"'):
                out.append(nxt)
            else:
                out.append(ch)
                out.append(nxt)
        else:
            out.append(ch)
    return "".join(out)


def _deserialize_legacy(serialized: str) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for entry in serialized.split(LEGACY_ENTRY_SEPARATOR):
        key, sep, value = entry.partition(LEGACY_KEY_SEPARATOR)
        if not sep or not key:
            log("WARN", f"Ignoring malformed legacy startup command entry: {entry!r}")
            continue
        mapping[legacy_unescape(key)] = legacy_unescape(value)
    return mapping


def _drop_invalid_names(mapping: Dict[str, str]) -> Dict[str, str]:
    valid: Dict[str, str] = {}
    for name, command in mapping.items():
        try:
            validate_action_name(name)
        except ValidationError as exc:
            log("WARN", f"Ignoring startup command {name!r}: {exc}")
            continue
        valid[name] = command
    return valid


def deserialize(serialized: str) -> Dict[str, str]:
    """Decode a mapping written by :func:`serialize` or by the legacy encoder."""
    if not serialized:
        return {}
    if serialized.startswith(ENCODING_PREFIX):
        mapping = _deserialize_v2(serialized[len(ENCODING_PREFIX):])
    else:
        mapping = _deserialize_legacy(serialized)
    return _drop_invalid_names(mapping)


class StartupActions:
    """Name -> command mapping with the validation rules of the edit menus.

    Numbered selection (edit, delete, test) always works on the
    lexicographically sorted listing, so the numbers stay stable between
    calls regardless of insertion order.
    """

    def __init__(self, mapping: Optional[Dict[str, str]] = None) -> None:
        self._commands: Dict[str, str] = dict(mapping or {})

    def __len__(self) -> int:
        return len(self._commands)

    def __bool__(self) -> bool:
        return bool(self._commands)

    def __contains__(self, name: object) -> bool:
        return name in self._commands

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __getitem__(self, name: str) -> str:
        return self._commands[name]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, StartupActions):
            return self._commands == other._commands
        if isinstance(other, dict):
            return self._commands == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"StartupActions({self._commands!r})"

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self._commands.get(name, default)

    def names(self) -> List[str]:
        return sorted(self._commands)

    def items(self) -> List[Tuple[str, str]]:
        return [(name, self._commands[name]) for name in self.names()]

    def to_dict(self) -> Dict[str, str]:
        return dict(self._commands)

    def serialize(self) -> str:
        return serialize(self._commands)

    @classmethod
    def from_serialized(cls, serialized: str) -> "StartupActions":
        return cls(deserialize(serialized))

    def name_at(self, index: int) -> str:
        """Return the action name at a 1-based position in the sorted listing."""
        names = self.names()
        if not names:
            raise NotFoundError("No startup commands configured")
        if not 1 <= index <= len(names):
            raise ValidationError(f"Invalid selection {index}: choose 1-{len(names)}")
        return names[index - 1]

    def add(self, name: str, command: str) -> None:
        validate_action_name(name)
        if name in self._commands:
            raise ValidationError(f"Command name '{name}' already exists")
        if not command:
            raise ValidationError("Command cannot be empty")
        self._commands[name] = command

    def edit(self, index: int, command: str) -> Optional[str]:
        """Replace the command at ``index``; an empty command keeps the current one.

        Returns the edited name, or ``None`` when nothing changed.
        """
        name = self.name_at(index)
        if not command:
            return None
        self._commands[name] = command
        return name

    def delete(self, index: int) -> str:
        name = self.name_at(index)
        del self._commands[name]
        return name

    def run_on_host(self, index: int) -> int:
        """Execute the selected command on the host (not inside the guest)."""
        name = self.name_at(index)
        command = self._commands[name]
        log("WARN", f"Testing command '{name}' on the host system: {command}")
        result = subprocess.run(["bash", "-c", command], check=False)
        if result.returncode == 0:
            log("SUCCESS", "Command executed successfully")
        else:
            log("ERROR", f"Command failed with exit code {result.returncode}")
        return result.returncode
