"""Module that keeps the cache coherent with changes made inside the workspace."""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from wsmirror.access import resolve_kind
from wsmirror.cache import CacheStore
from wsmirror.logger import log
from wsmirror.workspace.client import Watch, WorkspaceClient
from wsmirror.workspace.common import (
    ChangeEvent,
    ChangeType,
    EntryKind,
    normalize_path,
    parent_path,
)


@dataclass
class WatcherHandle:
    """Handle of an active watch on a root path."""

    path: str
    dispose: Callable[[], None]


class ChangeWatcher:
    """
    Translator of workspace change events into cache invalidations and updates.

    There is at most one recursive watch per root path. Events are handled one at a
    time in delivery order, and once a watch is disposed its events no longer touch the
    cache, even if they were already in flight.
    """

    def __init__(self, client: WorkspaceClient, cache: CacheStore) -> None:
        """Instantiate a watcher that applies the changes of client to cache."""
        self._client = client
        self._cache = cache
        self._handles: Dict[str, WatcherHandle] = {}

    @property
    def watched_paths(self) -> List[str]:
        """Return the root paths that are currently watched."""
        return sorted(self._handles)

    def watch(self, path: str) -> WatcherHandle:
        """Start watching a root path, or return the existing handle if it's watched."""
        path = normalize_path(path)

        if path in self._handles:
            return self._handles[path]

        watch = self._client.watch(path, recursive=True)
        watch.on_event(lambda event: self._handle_event(watch, event))

        def dispose() -> None:
            watch.dispose()

            if self._handles.get(path) is handle:
                del self._handles[path]

        handle = WatcherHandle(path=path, dispose=dispose)
        self._handles[path] = handle

        log.debug(f"watching {path}")

        return handle

    def unwatch(self, path: str) -> None:
        """Stop watching a root path. Paths that aren't watched are ignored."""
        handle = self._handles.get(normalize_path(path))

        if handle is not None:
            handle.dispose()

    def dispose_all(self) -> None:
        """Stop all watches."""
        for handle in list(self._handles.values()):
            handle.dispose()

    def _stale(self, watch: Watch) -> bool:
        return watch.disposed or self._cache.closed

    async def _handle_event(self, watch: Watch, event: ChangeEvent) -> None:
        if self._stale(watch):
            return

        log.debug(f"change event {event.type.value} {event.path}")

        if event.type == ChangeType.REMOVE:
            self._handle_remove(event.path)
        else:
            await self._handle_update(watch, event)

    def _handle_remove(self, path: str) -> None:
        # Needs to be checked before the file entry is dropped
        was_directory = self._cache.is_known_directory(path)

        self._cache.invalidate_file(path, removed=True)

        if was_directory:
            self._cache.invalidate_directory(path, removed=True)

        self._invalidate_parent(path)

    async def _handle_update(self, watch: Watch, event: ChangeEvent) -> None:
        kind = await resolve_kind(self._client, event.path)

        if self._stale(watch):
            return

        if kind == EntryKind.DIRECTORY:
            self._cache.invalidate_directory(event.path)
        else:
            content: Optional[str]

            try:
                content = await self._client.read_file(event.path)
            except Exception as e:
                log.warning(f"failed to read changed file {event.path}: {e}")
                content = None

            if self._stale(watch):
                return

            if content is None:
                self._cache.invalidate_file(event.path)
            else:
                self._cache.set_file_content(event.path, content)

        if event.type == ChangeType.ADD:
            self._invalidate_parent(event.path)

    def _invalidate_parent(self, path: str) -> None:
        parent = parent_path(path)

        if parent != path:
            self._cache.invalidate_directory(parent, recursive=False)
