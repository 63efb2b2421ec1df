"""Module with the controller of an editing session of a single workspace file."""

import asyncio
from enum import Enum
from typing import Callable, Optional, Set

from wsmirror.access import chain, FileAccess
from wsmirror.cache import CacheChange, CacheStore, ChangeKind
from wsmirror.logger import log
from wsmirror.workspace.common import normalize_path


class EditorState(Enum):
    """State of an editing session."""

    EMPTY = "empty"
    LOADING = "loading"
    READY = "ready"
    SAVING = "saving"


class EditorSession:
    """
    Controller that opens, edits and saves one file at a time.

    Files are loaded from the live connection if there is one, from a fresh cache entry
    if not, and from the fallback API as a last resort. Edits are saved automatically
    once no further edits were made for the debounce period, and can be saved manually
    at any time.

    Changes to the file made by someone else are adopted while there are no local edits
    and ignored while there are. In the latter case the next save overwrites them.
    """

    def __init__(
        self,
        cache: CacheStore,
        live: Optional[FileAccess] = None,
        fallback: Optional[FileAccess] = None,
        debounce_ms: int = 2000,
        max_age_ms: int = 1000,
    ) -> None:
        self._cache = cache
        self._live = live
        self._fallback = fallback
        self._debounce = debounce_ms / 1000
        self._max_age = max_age_ms / 1000

        self._state = EditorState.EMPTY
        self._path: Optional[str] = None
        self._content = ""
        self._saved_content = ""
        self._error: Optional[str] = None

        # Incremented whenever the open file changes, to discard stale results
        self._generation = 0

        self._load_task: Optional[asyncio.Task] = None
        self._save_task: Optional[asyncio.Task] = None
        self._autosave_tasks: Set[asyncio.Task] = set()
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._writing_cache = False

    @property
    def state(self) -> EditorState:
        """Return the state of the session."""
        return self._state

    @property
    def path(self) -> Optional[str]:
        """Return the path of the open file, if any."""
        return self._path

    @property
    def content(self) -> str:
        """Return the contents in the editor, including unsaved edits."""
        return self._content

    @property
    def dirty(self) -> bool:
        """Check if there are edits that differ from the last saved contents."""
        return self._content != self._saved_content

    @property
    def saving(self) -> bool:
        """Check if a save is in progress."""
        return self._state == EditorState.SAVING

    @property
    def error(self) -> Optional[str]:
        """Return the message of the last failed load or save, if any."""
        return self._error

    #
    # Loading
    #

    async def open(self, path: str) -> Optional[str]:
        """
        Open a file and return its contents.

        Opening another file while a load is in progress cancels that load, in which
        case the superseded call returns None. Unsaved edits of the previously opened
        file are discarded.
        """
        self._reset()

        path = normalize_path(path)
        generation = self._generation

        self._path = path
        self._state = EditorState.LOADING

        if self._unsubscribe is None:
            self._unsubscribe = self._cache.subscribe(self._on_cache_change)

        task = asyncio.get_running_loop().create_task(self._load(path))
        self._load_task = task

        try:
            content = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                return None

            raise
        except Exception as e:
            if generation == self._generation:
                log.error(f"failed to open {path}: {e}")
                self._error = str(e)
                self._state = EditorState.EMPTY
                self._path = None

            raise
        finally:
            if self._load_task is task:
                self._load_task = None

        if generation != self._generation:
            return None

        self._content = content
        self._saved_content = content
        self._error = None
        self._state = EditorState.READY

        return content

    async def _load(self, path: str) -> str:
        if self._live is not None:
            try:
                content = await self._live.read_file(path)
                self._store(path, content)
                return content
            except Exception as e:
                if self._fallback is None:
                    raise

                log.warning(f"live read of {path} failed, using fallback: {e}")
        else:
            entry = self._cache.get_file(path)

            if entry is not None and entry.is_fresh(self._max_age):
                log.debug(f"using cached contents of {path}")
                return entry.content

        if self._fallback is None:
            raise ConnectionError("no file access available")

        content = await self._fallback.read_file(path)
        self._store(path, content)

        return content

    def _store(self, path: str, content: str) -> None:
        """Push contents to the cache without treating them as an external update."""
        self._writing_cache = True

        try:
            self._cache.set_file_content(path, content)
        finally:
            self._writing_cache = False

    def _mark_dirty(self, path: str, dirty: bool) -> None:
        self._writing_cache = True

        try:
            self._cache.mark_file_dirty(path, dirty)
        finally:
            self._writing_cache = False

    #
    # Editing
    #

    def edit(self, content: str) -> None:
        """Replace the contents in the editor and schedule an automatic save."""
        if self._state not in (EditorState.READY, EditorState.SAVING):
            raise RuntimeError("no file is open")

        assert self._path is not None

        self._content = content
        self._mark_dirty(self._path, self.dirty)

        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

        if self.dirty:
            self._debounce_handle = asyncio.get_running_loop().call_later(
                self._debounce, self._autosave
            )

    def _autosave(self) -> None:
        self._debounce_handle = None

        # Empty contents are never saved automatically
        if not self.dirty or not self._content:
            return

        task = asyncio.get_running_loop().create_task(self.save())
        self._autosave_tasks.add(task)
        task.add_done_callback(self._autosave_finished)

    def _autosave_finished(self, task: asyncio.Task) -> None:
        self._autosave_tasks.discard(task)

        if task.cancelled():
            return

        error = task.exception()

        if error is not None:
            log.error(f"automatic save failed: {error}")

    async def save(self) -> bool:
        """
        Save the current contents immediately.

        Returns whether the save succeeded. On failure the edits are kept and the error
        is available through the error property.
        """
        if self._state not in (EditorState.READY, EditorState.SAVING):
            raise RuntimeError("no file is open")

        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

        # Saves are performed one after another
        while self._save_task is not None:
            await asyncio.shield(self._save_task)

        if not self.dirty:
            return True

        task = asyncio.get_running_loop().create_task(self._save())
        self._save_task = task
        task.add_done_callback(self._save_finished)

        # A write that has started runs to completion even if the caller goes away
        return await asyncio.shield(task)

    def _save_finished(self, task: asyncio.Task) -> None:
        if self._save_task is task:
            self._save_task = None

    async def _save(self) -> bool:
        path = self._path
        generation = self._generation
        snapshot = self._content

        assert path is not None

        access = chain(self._live, self._fallback)

        if access is None:
            self._error = "no file access available"
            return False

        self._state = EditorState.SAVING

        try:
            await access.write_file(path, snapshot)
        except Exception as e:
            log.error(f"failed to save {path}: {e}")

            if generation == self._generation:
                self._error = str(e)
                self._state = EditorState.READY

            return False

        self._store(path, snapshot)

        if generation != self._generation:
            return True

        self._saved_content = snapshot
        self._error = None
        self._state = EditorState.READY

        # Edits made while saving are still unsaved
        if self.dirty:
            self._mark_dirty(path, True)

        return True

    #
    # External updates
    #

    def _on_cache_change(self, change: CacheChange) -> None:
        if self._writing_cache or change.kind != ChangeKind.FILE:
            return

        if change.path != self._path or change.entry is None:
            return

        if self._state != EditorState.READY:
            return

        content = change.entry.content

        if content == self._content:
            return

        if self.dirty:
            log.info(f"ignoring external change of {change.path} with unsaved edits")

            # Last editor wins, keep the cache aware of the pending edits
            if not change.entry.dirty:
                self._mark_dirty(change.path, True)
        else:
            log.debug(f"adopting external change of {change.path}")
            self._content = content
            self._saved_content = content

    #
    # Teardown
    #

    def _reset(self) -> None:
        self._generation += 1

        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

        if self._load_task is not None:
            self._load_task.cancel()
            self._load_task = None

        for task in list(self._autosave_tasks):
            task.cancel()

        self._autosave_tasks.clear()

        if self._path is not None and self.dirty:
            self._mark_dirty(self._path, False)

        self._path = None
        self._content = ""
        self._saved_content = ""
        self._error = None
        self._state = EditorState.EMPTY

    def close(self) -> None:
        """
        Close the file, discarding unsaved edits.

        A pending load or automatic save is cancelled. A write that is already in
        progress completes, but its result no longer affects the session.
        """
        self._reset()

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
