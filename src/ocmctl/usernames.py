"""Validated usernames used as identity keys, path segments and arguments."""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from .errors import DuplicateUserError, UsernameError

USERNAME_PATTERN = r"[\w\d\-_]+"
_USERNAME_RE = re.compile(USERNAME_PATTERN)


@dataclass(frozen=True, order=True)
class Username:
    """A username satisfying :data:`USERNAME_PATTERN` in full."""

    value: str

    def __post_init__(self) -> None:
        """Reject values outside the username grammar."""
        if not isinstance(self.value, str) or _USERNAME_RE.fullmatch(self.value) is None:
            raise UsernameError(
                f"Invalid username {self.value!r}; usernames must match \"{USERNAME_PATTERN}\"."
            )

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, raw: str) -> Username:
        """Return a :class:`Username` for *raw* or raise :class:`UsernameError`."""
        return cls(raw)


def parse_usernames(raw: Iterable[str]) -> list[Username]:
    """Parse *raw* names preserving order and rejecting duplicates."""
    parsed = [Username.parse(item) for item in raw]
    seen: set[Username] = set()
    duplicates: list[str] = []
    for name in parsed:
        if name in seen and name.value not in duplicates:
            duplicates.append(name.value)
        seen.add(name)
    if duplicates:
        raise DuplicateUserError(duplicates)
    return parsed


__all__ = ["USERNAME_PATTERN", "Username", "parse_usernames"]
