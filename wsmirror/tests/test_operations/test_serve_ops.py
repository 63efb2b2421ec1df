import asyncio
import threading

import pytest

from wsmirror.args import Arguments
from wsmirror.operations.serve import ServeOperations
from wsmirror.workspace.client import WorkspaceClient
from wsmirror.workspace.common import ChangeType, Session


def test_missing_root(tmp_path):
    args = Arguments.parse(["serve", str(tmp_path / "missing")])

    with pytest.raises(NotADirectoryError):
        ServeOperations(args).run()


def test_root_is_file(tmp_path):
    (tmp_path / "file").write_text("abc")

    args = Arguments.parse(["serve", str(tmp_path / "file")])

    with pytest.raises(NotADirectoryError):
        ServeOperations(args).run()


@pytest.mark.network
def test_serve_and_publish_changes(tmp_path, agent_port, capsys):
    (tmp_path / "existing.txt").write_text("abc")

    args = Arguments.parse(
        [
            "--token=secret",
            "serve",
            str(tmp_path),
            f"--port={agent_port}",
            f"--events-port={agent_port + 1}",
            "--poll-interval=50",
        ]
    )

    stop = threading.Event()
    ops = ServeOperations(args, stop)

    t = threading.Thread(target=ops.run, daemon=True)
    t.start()

    session = Session(
        workspace_id="test",
        endpoint=f"tcp://127.0.0.1:{agent_port}",
        events_endpoint=f"tcp://127.0.0.1:{agent_port + 1}",
        token="secret",
    )

    async def scenario():
        client = WorkspaceClient(session, timeout_ms=5000)

        try:
            await client.connect()

            events = asyncio.Queue()
            watch = client.watch("/")
            watch.on_event(events.put_nowait)

            # Give the subscription time to reach the publisher
            await asyncio.sleep(0.2)

            await client.write_file("/new.txt", "new")

            event = await asyncio.wait_for(events.get(), 5)

            return event, await client.read_file("/existing.txt")
        finally:
            await client.close()

    try:
        event, content = asyncio.run(scenario())
    finally:
        stop.set()
        t.join(5)

    assert event.type == ChangeType.ADD
    assert event.path == "/new.txt"
    assert content == "abc"

    assert not t.is_alive()
    assert "serving" in capsys.readouterr().err
