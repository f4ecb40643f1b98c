"""
Versioned policy snapshots.

Mediation reads policies far more often than administrators edit them, so
resolved policy sets are cached per (tool, agent). Each cache entry is an
immutable tuple tagged with the store version it was read at. Any store write
bumps the version, which invalidates every entry at once; the next lookup
reloads and swaps in a whole new tuple. A resolve call therefore always sees
one consistent generation of rules.
"""

import logging
import threading
from typing import TYPE_CHECKING

from toolgate.schema import ToolPolicy

if TYPE_CHECKING:
    from toolgate.store.base import RuleStore

logger = logging.getLogger(__name__)


class PolicySnapshotCache:
    """
    Cache of applicable policies keyed by tool and agent.

    Usage:
        cache = PolicySnapshotCache(store)
        policies = cache.get("fs.read", agent_id="agent-1")
    """

    def __init__(self, store: "RuleStore", max_entries: int = 1024) -> None:
        self.store = store
        self.max_entries = max_entries
        self._entries: dict[tuple[str, str | None], tuple[int, tuple[ToolPolicy, ...]]] = {}
        self._lock = threading.Lock()

    def get(self, tool_name: str, agent_id: str | None = None) -> tuple[ToolPolicy, ...]:
        """
        Return the policies applicable to a tool call.

        Raises:
            StoreUnavailableError: If the store cannot be read
        """
        key = (tool_name, agent_id)
        version = self.store.version
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and entry[0] == version:
            return entry[1]

        policies = tuple(self.store.policies_for(tool_name, agent_id))
        # The store may have moved on while we were reading; only cache
        # what is known to belong to one version.
        if self.store.version == version:
            with self._lock:
                if len(self._entries) >= self.max_entries:
                    self._entries.clear()
                self._entries[key] = (version, policies)
        else:
            logger.debug("Policy store changed during load of %s; not caching", tool_name)
        return policies

    def invalidate(self) -> None:
        """Drop every cached snapshot."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
