from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

# Legacy host first, current host second. The "://" anchor keeps the current
# unstable host from also matching stable.melpa.org.
UNSTABLE_URL_PATTERNS: tuple[str, ...] = (
    r"://melpa\.milkbox\.net/packages",
    r"://melpa\.org/packages",
)
STABLE_URL_PATTERNS: tuple[str, ...] = (
    r"://hiddencameras\.milkbox\.net/packages",
    r"://stable\.melpa\.org/packages",
)


@dataclass(frozen=True)
class RepositoryEntry:
    name: str
    url: str


def _matches_any(url: str, patterns: Iterable[str]) -> bool:
    return any(re.search(p, url) for p in patterns)


def resolve_role(repositories: Iterable[RepositoryEntry], patterns: Sequence[str]) -> str | None:
    """Return the name of the first configured repository whose URL matches any pattern."""
    for repo in repositories:
        if _matches_any(repo.url, patterns):
            return repo.name
    return None


class ChannelResolver:
    def __init__(
        self,
        repositories: Sequence[RepositoryEntry],
        *,
        stable_patterns: Sequence[str] = STABLE_URL_PATTERNS,
        unstable_patterns: Sequence[str] = UNSTABLE_URL_PATTERNS,
    ) -> None:
        self._repositories = tuple(repositories)
        self.stable_patterns = tuple(stable_patterns)
        self.unstable_patterns = tuple(unstable_patterns)

    def resolve_role(self, patterns: Sequence[str]) -> str | None:
        return resolve_role(self._repositories, patterns)

    def stable_name(self) -> str | None:
        return self.resolve_role(self.stable_patterns)

    def unstable_name(self) -> str | None:
        return self.resolve_role(self.unstable_patterns)
