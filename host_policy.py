#Filename: host_policy.py
"""
HOST POLICY
Immutable set of blocked host patterns, loaded once at startup and
shared read-only by every handler.

A candidate (host or host:port, exactly as the protocol layer supplied it)
is blocked when an entry equals it or is a prefix of it. Matching is
textual and case-sensitive; no DNS resolution takes place.
"""

import logging
from typing import FrozenSet, Iterable, Iterator, Optional

from proxy_common import ConfigError

log = logging.getLogger(__name__)

COMMENT_PREFIX = "#"

def _clean_entries(lines: Iterable[str]) -> FrozenSet[str]:
    entries = set()
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith(COMMENT_PREFIX):
            continue
        entries.add(line)
    return frozenset(entries)

class HostPolicy:
    """Read-only blocklist. Safe to share across connections without locking."""
    __slots__ = ('_entries', '_source')

    def __init__(self, entries: FrozenSet[str], source: Optional[str] = None) -> None:
        self._entries = entries
        self._source = source

    @classmethod
    def load(cls, source: str) -> "HostPolicy":
        """
        Loads the policy from a line-oriented text file.
        Any I/O failure, including a missing file, raises ConfigError so that
        a misconfigured path can never silently disable blocking.
        """
        try:
            with open(source, 'r', encoding='utf-8') as fh:
                entries = _clean_entries(fh)
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to load blacklist {source}: {e}") from e
        log.info("Loaded %d blocked host patterns from %s", len(entries), source)
        return cls(entries, source)

    @classmethod
    def from_entries(cls, entries: Iterable[str]) -> "HostPolicy":
        """Builds a policy from in-memory patterns (same trimming rules as load)."""
        return cls(_clean_entries(entries))

    @property
    def source(self) -> Optional[str]:
        return self._source

    @property
    def entries(self) -> FrozenSet[str]:
        return self._entries

    def match(self, candidate: str) -> Optional[str]:
        """Returns the first entry that blocks the candidate, or None."""
        if not candidate:
            return None
        if candidate in self._entries:
            return candidate
        for entry in self._entries:
            if candidate.startswith(entry):
                return entry
        return None

    def is_blocked(self, candidate: str) -> bool:
        """True iff some entry equals or prefixes the candidate."""
        return self.match(candidate) is not None

    def __contains__(self, entry: object) -> bool:
        return entry in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<HostPolicy {len(self._entries)} entries from {self._source or '<memory>'}>"
