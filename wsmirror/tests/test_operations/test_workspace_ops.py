import io
from unittest import mock

import pytest

from wsmirror.args import Arguments
from wsmirror.connection import WorkspaceConnectionError
from wsmirror.operations.workspace import WorkspaceOperations


FILES = {
    "/": [
        {"name": "src", "path": "/src", "type": "directory"},
        {"name": "README.md", "path": "/README.md", "type": "file"},
    ],
    "/src": [
        {"name": "lib", "path": "/src/lib", "type": "directory"},
        {"name": "main.py", "path": "/src/main.py", "type": "file"},
    ],
    "/src/lib": [{"name": "util.py", "path": "/src/lib/util.py", "type": "file"}],
}


def make_args(tmp_path, *args):
    return Arguments.parse([f"--config={tmp_path / 'config'}", *args])


@pytest.fixture
def mock_api():
    async def get_files(project_id, path):
        return FILES.get(path, [])

    with mock.patch("wsmirror.operations.workspace.ApiClient") as api_class:
        api = api_class.return_value
        api.get_files = mock.AsyncMock(side_effect=get_files)
        api.read_file = mock.AsyncMock(return_value="hello\n")
        api.write_file = mock.AsyncMock()
        api.close = mock.AsyncMock()

        yield api


def test_config_overrides(tmp_path):
    (tmp_path / "config").write_text(
        """
        [api]
        base_url = https://config.example
        token = from-config

        [connection]
        timeout = 5000
        """
    )

    args = make_args(tmp_path, "--token=abc", "--timeout=100", "tree", "p1")
    ops = WorkspaceOperations(args)

    assert ops._config.api.base_url == "https://config.example"
    assert ops._config.api.token == "abc"
    assert ops._config.connection.timeout == 100


def test_tree(tmp_path, mock_api, capsys):
    args = make_args(tmp_path, "--no-live", "tree", "p1", "--depth=2")

    assert WorkspaceOperations(args).run() == 0

    assert capsys.readouterr().out == "src/\n  lib/\n  main.py\nREADME.md\n"
    mock_api.close.assert_awaited_once()


def test_tree_of_subdirectory(tmp_path, mock_api, capsys):
    args = make_args(tmp_path, "--no-live", "tree", "p1", "src/lib")

    WorkspaceOperations(args).run()

    assert capsys.readouterr().out == "util.py\n"


def test_tree_of_file(tmp_path, mock_api):
    args = make_args(tmp_path, "--no-live", "tree", "p1", "/README.md")

    with pytest.raises(NotADirectoryError):
        WorkspaceOperations(args).run()


def test_tree_failure(tmp_path, mock_api):
    mock_api.get_files.side_effect = IOError("service unavailable")

    args = make_args(tmp_path, "--no-live", "tree", "p1")

    with pytest.raises(IOError) as e:
        WorkspaceOperations(args).run()

    assert "service unavailable" in str(e.value)


def test_cat(tmp_path, mock_api, capsys):
    args = make_args(tmp_path, "--no-live", "cat", "p1", "/src/main.py")

    assert WorkspaceOperations(args).run() == 0

    assert capsys.readouterr().out == "hello\n"
    mock_api.read_file.assert_awaited_once_with("p1", "/src/main.py")


def test_put_local_file(tmp_path, mock_api):
    (tmp_path / "local.py").write_text("print('hi')\n")

    args = make_args(
        tmp_path, "--no-live", "put", "p1", "/a.py", str(tmp_path / "local.py")
    )

    assert WorkspaceOperations(args).run() == 0

    mock_api.write_file.assert_awaited_once_with("p1", "/a.py", "print('hi')\n")


def test_put_stdin(tmp_path, mock_api):
    args = make_args(tmp_path, "--no-live", "put", "p1", "/a.py")

    with mock.patch("sys.stdin", io.StringIO("from stdin")):
        WorkspaceOperations(args).run()

    mock_api.write_file.assert_awaited_once_with("p1", "/a.py", "from stdin")


def test_exec_requires_connection(tmp_path, mock_api):
    args = make_args(tmp_path, "--no-live", "exec", "p1", "ls")

    with pytest.raises(WorkspaceConnectionError):
        WorkspaceOperations(args).run()


def test_watch_requires_connection(tmp_path, mock_api):
    args = make_args(tmp_path, "--no-live", "watch", "p1")

    with pytest.raises(WorkspaceConnectionError):
        WorkspaceOperations(args).run()


def test_session_failure_falls_back(tmp_path, mock_api, capsys):
    mock_api.get_session = mock.AsyncMock(
        side_effect=WorkspaceConnectionError("sandbox is asleep")
    )

    args = make_args(tmp_path, "cat", "p1", "/src/main.py")

    assert WorkspaceOperations(args).run() == 0

    assert capsys.readouterr().out == "hello\n"


#
# Against a live agent
#


@pytest.mark.network
def test_cat_live(tmp_path, agent_session, mock_api, capsys):
    (tmp_path / "a.txt").write_text("live contents")

    args = make_args(
        tmp_path,
        f"--endpoint={agent_session.endpoint}",
        f"--token={agent_session.token}",
        "--timeout=5000",
        "cat",
        "p1",
        "/a.txt",
    )

    assert WorkspaceOperations(args).run() == 0

    assert capsys.readouterr().out == "live contents"
    mock_api.read_file.assert_not_called()


@pytest.mark.network
def test_put_live(tmp_path, agent_session, mock_api):
    (tmp_path / "local.txt").write_text("uploaded")

    args = make_args(
        tmp_path,
        f"--endpoint={agent_session.endpoint}",
        f"--token={agent_session.token}",
        "--timeout=5000",
        "put",
        "p1",
        "/dir/remote.txt",
        str(tmp_path / "local.txt"),
    )

    WorkspaceOperations(args).run()

    assert (tmp_path / "dir" / "remote.txt").read_text() == "uploaded"
    mock_api.write_file.assert_not_called()


@pytest.mark.network
def test_exec_live(tmp_path, agent_session, mock_api, capsys):
    args = make_args(
        tmp_path,
        f"--endpoint={agent_session.endpoint}",
        f"--token={agent_session.token}",
        "--timeout=5000",
        "exec",
        "p1",
        "echo",
        "hello",
    )

    WorkspaceOperations(args).run()

    assert capsys.readouterr().out == "hello\n"


@pytest.mark.network
def test_unreachable_agent_falls_back(tmp_path, agent_port, mock_api, capsys):
    # Nothing listens on the port
    args = make_args(
        tmp_path,
        f"--endpoint=tcp://127.0.0.1:{agent_port}",
        "--timeout=100",
        "cat",
        "p1",
        "/src/main.py",
    )

    assert WorkspaceOperations(args).run() == 0

    assert capsys.readouterr().out == "hello\n"
