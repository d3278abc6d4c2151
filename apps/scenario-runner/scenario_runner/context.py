"""Per-scenario mutable run state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional
import re

from .models import TokenUsage

DEFAULT_USER_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
_REFERENCE_PATTERN = re.compile(r"\$(\w+(?:\.\w+)?)")
_USER_ID_TOKENS = {"userId", "user_id"}


@dataclass
class AliasEntry:
    entity: str
    id: Any


@dataclass
class ExecutionContext:
    """State threaded through the steps of exactly one scenario execution.

    Not thread-safe. Each in-flight scenario owns its own instance.
    """

    user_id: str = DEFAULT_USER_ID
    conversation_id: Optional[str] = None
    conversations: dict[str, str] = field(default_factory=dict)
    aliases: dict[str, AliasEntry] = field(default_factory=dict)
    captured: dict[str, dict[str, Any]] = field(default_factory=dict)
    usage: TokenUsage = field(default_factory=TokenUsage)

    def register_alias(self, alias: str, entity: str, row: dict[str, Any]) -> None:
        self.aliases[alias] = AliasEntry(entity=entity, id=row.get("id"))
        self.captured[alias] = dict(row)

    def add_usage(self, usage: Optional[TokenUsage]) -> None:
        self.usage = self.usage.add(usage)

    def lookup(self, reference: str) -> tuple[bool, Any]:
        """Resolve ``userId`` or ``alias[.field]`` (without the leading ``$``)."""

        if reference in _USER_ID_TOKENS:
            return True, self.user_id
        name, _, attribute = reference.partition(".")
        attribute = attribute or "id"
        captured = self.captured.get(name)
        if captured is not None and attribute in captured:
            return True, captured[attribute]
        entry = self.aliases.get(name)
        if entry is not None and attribute == "id":
            return True, entry.id
        return False, None

    def resolve(self, value: Any) -> Any:
        """Substitute ``$`` references in strings, lists and mappings.

        A string that is exactly one reference resolves to the raw value so
        that numeric ids keep their type. Unknown references stay untouched.
        """

        if isinstance(value, str):
            whole = _REFERENCE_PATTERN.fullmatch(value)
            if whole:
                found, resolved = self.lookup(whole.group(1))
                return resolved if found else value
            return _REFERENCE_PATTERN.sub(self._substitute, value)
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        return value

    def _substitute(self, match: re.Match[str]) -> str:
        found, resolved = self.lookup(match.group(1))
        return str(resolved) if found else match.group(0)
