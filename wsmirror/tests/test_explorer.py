import asyncio

import pytest

from wsmirror.access import FileAccess
from wsmirror.cache import CacheStore
from wsmirror.explorer import FileExplorer
from wsmirror.tree import sort_nodes
from wsmirror.watcher import ChangeWatcher
from wsmirror.workspace.client import Watch
from wsmirror.workspace.common import (
    ChangeEvent,
    ChangeType,
    EntryKind,
    FileNode,
    parent_path,
)


class TreeAccess(FileAccess):
    """Access to an in-memory tree given as a set of file and directory paths."""

    name = "tree"

    def __init__(self, files=(), directories=(), delay=0):
        self.files = set(files)
        self.directories = set(directories)
        self.delay = delay
        self.listings = []
        self.error = None

    async def list_directory(self, path):
        self.listings.append(path)
        await asyncio.sleep(self.delay)

        if self.error is not None:
            raise self.error

        nodes = [
            FileNode(p.rsplit("/", 1)[-1], p, EntryKind.FILE)
            for p in self.files
            if parent_path(p) == path
        ] + [
            FileNode(p.rsplit("/", 1)[-1], p, EntryKind.DIRECTORY)
            for p in self.directories
            if parent_path(p) == path and p != path
        ]

        return sort_nodes(nodes)

    async def read_file(self, path):
        raise NotImplementedError()

    async def write_file(self, path, content):
        raise NotImplementedError()


class EventSource:
    """Workspace client that only delivers change events to its watches."""

    def __init__(self):
        self.watches = []

    def watch(self, path, recursive=True):
        watch = Watch(path, recursive, self)
        self.watches.append(watch)
        return watch

    def _remove_watch(self, watch):
        self.watches.remove(watch)

    def emit(self, typ, path):
        for watch in self.watches:
            if watch.matches(path):
                watch.emit(ChangeEvent(typ, path))

    async def drain(self):
        for watch in list(self.watches):
            await watch.drain()


def paths(nodes):
    result = []

    for node in nodes:
        result.append(node.path)

        if node.children is not None:
            result.extend(paths(node.children))

    return result


def make_access():
    return TreeAccess(
        files={"/README.md", "/src/main.py", "/src/lib/util.py"},
        directories={"/src", "/src/lib", "/docs"},
    )


def test_load_root():
    cache = CacheStore()
    access = make_access()

    async def scenario():
        explorer = FileExplorer(cache, live=access)
        return await explorer.load_root()

    nodes = asyncio.run(scenario())

    assert paths(nodes) == ["/docs", "/src", "/README.md"]
    assert all(n.children is None for n in nodes)
    assert cache.get_directory("/") is not None


def test_expand_and_collapse():
    async def scenario():
        explorer = FileExplorer(CacheStore(), fallback=make_access())
        await explorer.load_root()

        await explorer.expand("/src")
        await explorer.expand("/src/lib")

        assert paths(explorer.nodes) == [
            "/docs",
            "/src",
            "/src/lib",
            "/src/lib/util.py",
            "/src/main.py",
            "/README.md",
        ]
        assert explorer.expanded == {"/src", "/src/lib"}

        explorer.collapse("/src")

        assert not explorer.is_expanded("/src")

        # The loaded listing is kept
        assert "/src/main.py" in paths(explorer.nodes)

    asyncio.run(scenario())


def test_toggle():
    async def scenario():
        explorer = FileExplorer(CacheStore(), live=make_access())
        await explorer.load_root()

        await explorer.toggle("/docs")
        assert explorer.is_expanded("/docs")

        await explorer.toggle("/docs")
        assert not explorer.is_expanded("/docs")

    asyncio.run(scenario())


def test_expand_invalid_paths():
    async def scenario():
        explorer = FileExplorer(CacheStore(), live=make_access())
        await explorer.load_root()

        with pytest.raises(FileNotFoundError):
            await explorer.expand("/missing")

        with pytest.raises(NotADirectoryError):
            await explorer.expand("/README.md")

    asyncio.run(scenario())


def test_concurrent_expansion_fetches_once():
    access = make_access()
    access.delay = 0.01

    async def scenario():
        explorer = FileExplorer(CacheStore(), live=access)
        await explorer.load_root()

        await asyncio.gather(explorer.expand("/src"), explorer.expand("/src"))

        return explorer.nodes

    nodes = asyncio.run(scenario())

    assert access.listings.count("/src") == 1
    assert paths(nodes).count("/src/main.py") == 1


def test_loading_state():
    access = make_access()
    access.delay = 0.01

    async def scenario():
        explorer = FileExplorer(CacheStore(), live=access)
        await explorer.load_root()

        task = asyncio.get_running_loop().create_task(explorer.expand("/src"))
        await asyncio.sleep(0)

        assert explorer.loading == {"/src"}

        await task

        assert explorer.loading == set()

    asyncio.run(scenario())


def test_listing_error():
    access = make_access()

    async def scenario():
        explorer = FileExplorer(CacheStore(), live=access)
        await explorer.load_root()

        access.error = IOError("unreachable")
        await explorer.expand("/src")

        assert "unreachable" in explorer.error
        assert explorer.loading == set()

        # Listings that were already loaded are kept
        assert paths(explorer.nodes) == ["/docs", "/src", "/README.md"]

    asyncio.run(scenario())


def test_invalidation_reloads_expanded_directory():
    cache = CacheStore()
    access = make_access()

    async def scenario():
        explorer = FileExplorer(cache, live=access)
        await explorer.load_root()
        await explorer.expand("/src")

        access.files.add("/src/new.py")
        cache.invalidate_directory("/src", recursive=False)
        await explorer.settle()

        assert "/src/new.py" in paths(explorer.nodes)

        # Collapsed directories aren't fetched again
        access.files.add("/docs/index.md")
        cache.invalidate_directory("/docs", recursive=False)
        await explorer.settle()

        assert "/docs/index.md" not in paths(explorer.nodes)

        explorer.close()

    asyncio.run(scenario())

    assert access.listings.count("/docs") == 0


def test_removed_expanded_directory_is_collapsed():
    cache = CacheStore()
    access = make_access()

    async def scenario():
        explorer = FileExplorer(cache, live=access)
        await explorer.load_root()
        await explorer.expand("/src")
        await explorer.expand("/src/lib")

        access.directories.discard("/src/lib")
        access.files.discard("/src/lib/util.py")
        cache.invalidate_directory("/src")
        await explorer.settle()

        assert explorer.expanded == {"/src"}
        assert "/src/lib" not in paths(explorer.nodes)

    asyncio.run(scenario())


def test_watched_removal_of_expanded_directory():
    cache = CacheStore()
    access = make_access()
    source = EventSource()

    async def scenario():
        explorer = FileExplorer(
            cache, live=access, watcher=ChangeWatcher(source, cache)
        )
        await explorer.load_root()
        await explorer.expand("/src")
        await explorer.expand("/src/lib")

        access.directories.discard("/src/lib")
        access.files.discard("/src/lib/util.py")
        listings = len(access.listings)

        source.emit(ChangeType.REMOVE, "/src/lib")
        await source.drain()
        await explorer.settle()

        assert explorer.expanded == {"/src"}
        assert "/src/lib" not in paths(explorer.nodes)
        assert access.listings[listings:] == ["/src"]

    asyncio.run(scenario())

    assert cache.get_directory("/src/lib") is None
    assert [n.path for n in cache.get_directory("/src").nodes] == ["/src/main.py"]


def test_refresh():
    cache = CacheStore()
    access = make_access()

    async def scenario():
        explorer = FileExplorer(cache, live=access)
        await explorer.load_root()
        await explorer.expand("/src")

        access.files.add("/CHANGELOG.md")
        await explorer.refresh()

        assert explorer.expanded == set()
        assert paths(explorer.nodes) == ["/docs", "/src", "/CHANGELOG.md", "/README.md"]

    asyncio.run(scenario())


def test_refresh_directory():
    access = make_access()

    async def scenario():
        explorer = FileExplorer(CacheStore(), live=access)
        await explorer.load_root()
        await explorer.expand("/src")

        access.files.add("/src/new.py")
        await explorer.refresh_directory("/src")

        assert "/src/new.py" in paths(explorer.nodes)

    asyncio.run(scenario())


def test_no_access():
    async def scenario():
        explorer = FileExplorer(CacheStore())

        with pytest.raises(RuntimeError):
            await explorer.load_root()

    asyncio.run(scenario())


def test_closed_explorer_ignores_cache():
    cache = CacheStore()
    access = make_access()

    async def scenario():
        explorer = FileExplorer(cache, live=access)
        await explorer.load_root()
        explorer.close()

        cache.invalidate_directory("/")
        await explorer.settle()

    asyncio.run(scenario())

    assert access.listings == ["/"]
