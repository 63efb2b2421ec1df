"""Module with the file explorer model that renders the workspace as a tree."""

import asyncio
from typing import List, Optional, Set

from wsmirror.access import chain, FileAccess
from wsmirror.cache import CacheChange, CacheStore, ChangeKind
from wsmirror.logger import log
from wsmirror.tree import find_node, reconcile
from wsmirror.watcher import ChangeWatcher
from wsmirror.workspace.common import FileNode, is_ancestor, normalize_path


class FileExplorer:
    """
    Tree of workspace files with expandable directories.

    Directory listings are always fetched through the cache, so the explorer shares its
    data with the other consumers of the workspace and concurrent expansions of the
    same directory only cause a single fetch. When a listing in the cache is
    invalidated, for example because the change watcher saw a file being added, the
    affected expanded directories are fetched again in the background.
    """

    def __init__(
        self,
        cache: CacheStore,
        live: Optional[FileAccess] = None,
        fallback: Optional[FileAccess] = None,
        watcher: Optional[ChangeWatcher] = None,
    ) -> None:
        self._cache = cache
        self._access = chain(live, fallback)
        self._watcher = watcher

        self._nodes: List[FileNode] = []
        self._expanded: Set[str] = set()
        self._loading: Set[str] = set()
        self._error: Optional[str] = None

        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

        self._unsubscribe = cache.subscribe(self._on_cache_change)

    @property
    def nodes(self) -> List[FileNode]:
        """Return the top level of the tree with the loaded listings below it."""
        return list(self._nodes)

    @property
    def expanded(self) -> Set[str]:
        """Return the paths of the expanded directories."""
        return set(self._expanded)

    @property
    def loading(self) -> Set[str]:
        """Return the directories that are currently being fetched."""
        return set(self._loading)

    @property
    def error(self) -> Optional[str]:
        """Return the message of the last failed fetch, if nothing succeeded since."""
        return self._error

    def is_expanded(self, path: str) -> bool:
        """Check if a directory is expanded."""
        return normalize_path(path) in self._expanded

    #
    # Loading
    #

    async def load_root(self) -> List[FileNode]:
        """Fetch the top level of the tree and start watching the workspace."""
        if self._watcher is not None:
            self._watcher.watch("/")

        await self._load_tree("/")

        return self.nodes

    async def _fetch(self, path: str) -> bool:
        """Fetch a single listing through the cache and merge it into the tree."""
        if self._access is None:
            raise RuntimeError("no file access available")

        self._loading.add(path)

        try:
            children = await self._cache.load_directory(
                path, self._access.list_directory
            )
        except Exception as e:
            log.error(f"failed to load directory {path}: {e}")
            self._error = f"failed to load {path}: {e}"
            return False
        finally:
            self._loading.discard(path)

        # Results of fetches that outlived the explorer are discarded
        if self._closed:
            return False

        self._nodes = reconcile(self._nodes, path, children)
        self._error = None

        return True

    async def _load_tree(self, path: str) -> None:
        """Fetch a directory followed by all of its expanded subdirectories."""
        if not await self._fetch(path):
            return

        # Sorting puts every directory before its subdirectories
        for sub in sorted(p for p in self._expanded if is_ancestor(path, p)):
            if sub not in self._expanded:
                continue

            node = find_node(self._nodes, sub)

            if node is None or not node.is_directory:
                self._collapse_subtree(sub)
                continue

            if not await self._fetch(sub):
                return

    def _collapse_subtree(self, path: str) -> None:
        self._expanded = {
            p for p in self._expanded if p != path and not is_ancestor(path, p)
        }

    #
    # User actions
    #

    async def expand(self, path: str) -> None:
        """Show the children of a directory and fetch it with its expanded subtree."""
        path = normalize_path(path)

        if path != "/":
            node = find_node(self._nodes, path)

            if node is None:
                raise FileNotFoundError(f"{path} is not in the tree")
            elif not node.is_directory:
                raise NotADirectoryError(f"{path} is not a directory")

        self._expanded.add(path)
        await self._load_tree(path)

    def collapse(self, path: str) -> None:
        """Hide the children of a directory. The loaded listing is kept."""
        self._expanded.discard(normalize_path(path))

    async def toggle(self, path: str) -> None:
        """Expand a collapsed directory or collapse an expanded one."""
        if self.is_expanded(path):
            self.collapse(path)
        else:
            await self.expand(path)

    async def refresh(self) -> None:
        """Drop all cached state, collapse everything and fetch the root again."""
        self._cache.clear()
        self._expanded.clear()
        self._nodes = []
        self._error = None

        await self._load_tree("/")

    async def refresh_directory(self, path: str) -> None:
        """Fetch a directory and its expanded subdirectories again."""
        path = normalize_path(path)

        self._cache.invalidate_directory(path)
        await self._load_tree(path)

    #
    # Cache updates
    #

    def _on_cache_change(self, change: CacheChange) -> None:
        path = change.path

        # A deleted path is never fetched again, its parent listing is reloaded instead
        if change.removed:
            self._collapse_subtree(path)
            return

        if change.kind != ChangeKind.DIRECTORY or change.entry is not None:
            return

        if path != "/" and path not in self._expanded:
            return

        if self._closed:
            return

        task = asyncio.get_running_loop().create_task(self._load_tree(path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def settle(self) -> None:
        """Wait for all background fetches to complete."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Stop reacting to cache changes and cancel background fetches."""
        self._closed = True
        self._unsubscribe()

        for task in list(self._tasks):
            task.cancel()

        self._tasks.clear()
