"""Shared functionality between the workspace and agent operations."""

from abc import ABC
import asyncio
import contextlib
import threading
from typing import Any, Callable


class Operations(ABC):
    """Base class for the logic of a command-line action."""

    def run(self) -> int:
        """Run the operations and clean up properly in case of errors."""
        with contextlib.ExitStack() as stack:
            return self._run(stack)

        # https://github.com/python/mypy/issues/7726
        assert False, "unreachable"

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Run the actual operations."""
        raise NotImplementedError()

    @staticmethod
    def _start_thread(target: Callable[..., None], *args: Any) -> threading.Thread:
        """
        Start a thread with the specified function.

        It is made a daemon in case the thread never exits, like an RPC server, so that
        it doesn't block the shutting down of the program.
        """
        t = threading.Thread(target=target, args=args, daemon=True)
        t.start()
        return t


class AsyncOperations(Operations):
    """Base class for operations that run in an asyncio event loop."""

    def run(self) -> int:
        """Run the operations in a new event loop."""
        return asyncio.run(self._run_async())

    async def _run_async(self) -> int:
        async with contextlib.AsyncExitStack() as stack:
            return await self._run_in_loop(stack)

        # https://github.com/python/mypy/issues/7726
        assert False, "unreachable"

    async def _run_in_loop(self, stack: contextlib.AsyncExitStack) -> int:
        """Run the actual operations."""
        raise NotImplementedError()
