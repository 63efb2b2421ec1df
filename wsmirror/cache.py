"""
Module that implements the directory and file content cache of a workspace.

The cache is the single source of truth for every consumer inside the process. The file
explorer, the editor and the change watcher all read from and write to the same store
instance, which is created when a workspace is activated and thrown away when it is
deactivated. Nothing is persisted across process restarts.

The store follows a few rules to remain coherent with the workspace:

* Writes replace an entry for a path as a whole. There is never a partial merge of an
old and new directory listing or file content, so interleaved writes for the same path
can't produce a mix of the two. The last completed write wins.
* Invalidation removes an entry rather than marking it stale, so that the next read is
a cache miss and will go back to the workspace for the truth.
* Every mutation notifies subscribers with a description of what changed, which allows
consumers to re-render or reconcile their own state.

All methods that mutate the store are synchronous and therefore atomic within the
event loop. The only asynchronous operation is load_directory(), which coalesces
concurrent fetches of the same uncached directory into a single fetch.
"""

from __future__ import annotations

import asyncio
import collections
from contextlib import asynccontextmanager
import copy
from dataclasses import dataclass, field
from enum import Enum
import time
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
)

from wsmirror.logger import log
from wsmirror.workspace.common import EntryKind, FileNode, is_ancestor, normalize_path


@dataclass
class DirectoryCacheEntry:
    """Cached listing of a single directory."""

    path: str
    nodes: List[FileNode]
    fetched_at: float = field(default_factory=time.time)


@dataclass
class FileCacheEntry:
    """
    Cached contents of a single file.

    The dirty flag is set while a consumer holds local edits of the file that have not
    been saved yet.
    """

    path: str
    content: str
    last_modified_at: float = field(default_factory=time.time)
    dirty: bool = False

    def is_fresh(self, max_age: float) -> bool:
        """Check if the entry was modified less than max_age seconds ago."""
        return time.time() - self.last_modified_at <= max_age


class ChangeKind(Enum):
    """Part of the cache that a change applies to."""

    FILE = "file"
    DIRECTORY = "directory"
    ALL = "all"


@dataclass(frozen=True)
class CacheChange:
    """
    Description of a mutation of the cache, passed to subscribers.

    The entry is the new entry for the path, or None if it was removed. The removed
    flag is set when the entry was dropped because the path no longer exists in the
    workspace, rather than to have it fetched again.
    """

    kind: ChangeKind
    path: str
    entry: Any = None
    removed: bool = False


Subscriber = Callable[[CacheChange], None]


class LockIndex:
    """
    Collection of asyncio locks to serialize critical sections by arbitrary keys.

    Locks are automatically garbage collected when no longer in use (no task in the
    critical section and none waiting to enter).
    """

    def __init__(self) -> None:
        """Instantiate a LockIndex."""
        self._locks: Dict[Any, asyncio.Lock] = collections.defaultdict(asyncio.Lock)
        self._lock_users: Dict[Any, int] = collections.defaultdict(int)

    @asynccontextmanager
    async def lock(self, key: Any) -> AsyncIterator[None]:
        """Lock a critical section based on the specified key."""
        self._lock_users[key] += 1
        lock = self._locks[key]

        try:
            async with lock:
                yield
        finally:
            # Decrement user count and delete lock if there are none left
            self._lock_users[key] -= 1

            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    @property
    def lock_count(self) -> int:
        """Return the number of locks currently in use."""
        return len(self._locks)


class CacheStore:
    """Cache of directory listings and file contents for a single workspace."""

    def __init__(self) -> None:
        """Instantiate an empty cache."""
        self._directories: Dict[str, DirectoryCacheEntry] = {}
        self._files: Dict[str, FileCacheEntry] = {}

        self._subscribers: List[Subscriber] = []
        self._directory_locks = LockIndex()
        self._closed = False

    #
    # Directories
    #

    def get_directory(self, path: str) -> Optional[DirectoryCacheEntry]:
        """Return a copy of the cached listing of a directory, if any."""
        entry = self._directories.get(normalize_path(path))
        return copy.deepcopy(entry) if entry else None

    def set_directory(self, path: str, nodes: List[FileNode]) -> None:
        """Replace the cached listing of a directory."""
        path = normalize_path(path)

        entry = DirectoryCacheEntry(path=path, nodes=copy.deepcopy(nodes))
        self._directories[path] = entry

        self._notify(CacheChange(ChangeKind.DIRECTORY, path, copy.deepcopy(entry)))

    def invalidate_directory(
        self, path: str, recursive: bool = True, removed: bool = False
    ) -> None:
        """
        Remove the cached listing of a directory.

        By default the listings of all of its subdirectories are removed as well. Pass
        removed=True if the directory itself was deleted from the workspace.
        """
        path = normalize_path(path)

        keys = [
            key
            for key in self._directories
            if key == path or (recursive and is_ancestor(path, key))
        ]

        for key in keys:
            del self._directories[key]

        self._notify(CacheChange(ChangeKind.DIRECTORY, path, None, removed))

    def is_known_directory(self, path: str) -> bool:
        """Check if any cached information says that the path is a directory."""
        path = normalize_path(path)

        if path in self._directories:
            return True

        for entry in self._directories.values():
            for node in entry.nodes:
                if node.path == path:
                    return node.kind == EntryKind.DIRECTORY

        return False

    async def load_directory(
        self, path: str, loader: Callable[[str], Awaitable[List[FileNode]]]
    ) -> List[FileNode]:
        """
        Return the cached listing of a directory, or fetch and cache it with loader.

        Concurrent loads of the same uncached directory only fetch it once, so all of
        the callers receive the same listing and the cache holds a single entry.
        """
        path = normalize_path(path)

        async with self._directory_locks.lock(path):
            entry = self.get_directory(path)

            if entry is not None:
                return entry.nodes

            nodes = await loader(path)

            # The store may have been torn down while the listing was being fetched
            if not self._closed:
                self.set_directory(path, nodes)

            return copy.deepcopy(nodes)

    #
    # Files
    #

    def get_file(self, path: str) -> Optional[FileCacheEntry]:
        """Return a copy of the cached contents of a file, if any."""
        entry = self._files.get(normalize_path(path))
        return copy.copy(entry) if entry else None

    def set_file_content(self, path: str, content: str) -> None:
        """Replace the cached contents of a file and mark them as clean."""
        path = normalize_path(path)

        entry = FileCacheEntry(path=path, content=content)
        self._files[path] = entry

        self._notify(CacheChange(ChangeKind.FILE, path, copy.copy(entry)))

    def mark_file_dirty(self, path: str, dirty: bool) -> None:
        """Flag whether a file has local unsaved edits. Uncached files are ignored."""
        entry = self._files.get(normalize_path(path))

        if entry is not None and entry.dirty != dirty:
            entry.dirty = dirty
            self._notify(CacheChange(ChangeKind.FILE, entry.path, copy.copy(entry)))

    def invalidate_file(self, path: str, removed: bool = False) -> None:
        """Remove the cached contents of a file."""
        path = normalize_path(path)

        self._files.pop(path, None)

        self._notify(CacheChange(ChangeKind.FILE, path, None, removed))

    #
    # Everything
    #

    def clear(self) -> None:
        """Remove all cached listings and contents."""
        self._directories.clear()
        self._files.clear()

        self._notify(CacheChange(ChangeKind.ALL, "/", None))

    def close(self) -> None:
        """Tear down the store. Subscribers are disposed and the cache is emptied."""
        self._closed = True
        self._subscribers.clear()
        self._directories.clear()
        self._files.clear()

    @property
    def closed(self) -> bool:
        """Check if the store was torn down."""
        return self._closed

    def count(self) -> int:
        """Return the number of cached entries."""
        return len(self._directories) + len(self._files)

    #
    # Subscriptions
    #

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call back after every mutation until the returned disposer is called."""
        self._subscribers.append(callback)

        def dispose() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return dispose

    def _notify(self, change: CacheChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception as e:
                log.error(f"cache subscriber failed for {change.path}: {e}")
