"""Module that implements the reference workspace agent for a local directory."""

import contextlib
import os
import sys
import threading
from typing import Optional

from wsmirror.args import Arguments
import wsmirror.rpc as rpc
from wsmirror.workspace.service import (
    ChangePublisher,
    diff_snapshots,
    take_snapshot,
    WorkspaceService,
)
from .common import Operations


class ServeOperations(Operations):
    """Class that exposes a directory as a workspace until interrupted."""

    def __init__(self, args: Arguments, stop: Optional[threading.Event] = None):
        """Initialize the agent based on command-line arguments."""
        self._args = args
        self._stop = stop or threading.Event()

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Serve file operations and publish changes until stopped."""
        root = os.path.realpath(self._args.root)

        if not os.path.isdir(root):
            raise NotADirectoryError(f"{root} is not a directory")

        # Start the change feed first so no change after the initial scan is missed
        publisher = ChangePublisher(f"tcp://0.0.0.0:{self._args.events_port}")
        stack.callback(publisher.close)

        service = WorkspaceService(root)
        server = rpc.Server(service, token=self._args.token, worker_count=4)
        self._start_thread(server.serve, f"tcp://0.0.0.0:{self._args.port}")

        print(
            f"serving {root} on port {self._args.port}"
            f" with changes on port {self._args.events_port}",
            file=sys.stderr,
        )

        self._publish_changes(root, publisher, self._args.poll_interval / 1000)

        return 0

    def _publish_changes(
        self, root: str, publisher: ChangePublisher, interval: float
    ) -> None:
        """Scan the directory for changes at every interval and publish them."""
        snapshot = take_snapshot(root)

        while not self._stop.wait(interval):
            new_snapshot = take_snapshot(root)

            for batch in diff_snapshots(snapshot, new_snapshot):
                publisher.publish(batch)

            snapshot = new_snapshot
