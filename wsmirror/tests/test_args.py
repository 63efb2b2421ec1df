import pytest

from wsmirror.args import Arguments


def test_no_args():
    with pytest.raises(SystemExit):
        Arguments.parse([])


def test_unknown_action():
    with pytest.raises(SystemExit):
        Arguments.parse(["frobnicate", "p1"])


def test_tree():
    args = Arguments.parse(["tree", "p1"])

    assert args.action == "tree"
    assert args.project == "p1"
    assert args.path == "/"
    assert args.depth == 1

    assert args.live
    assert not args.debug
    assert args.timeout is None

    args = Arguments.parse(["tree", "p1", "/src", "--depth=3"])

    assert args.path == "/src"
    assert args.depth == 3


def test_depth():
    assert Arguments.parse(["tree", "p1", "--depth=0"]).depth == 0

    with pytest.raises(SystemExit):
        Arguments.parse(["tree", "p1", "--depth=-1"])


def test_cat():
    args = Arguments.parse(["cat", "p1", "/src/main.py"])

    assert args.action == "cat"
    assert args.path == "/src/main.py"

    with pytest.raises(SystemExit):
        Arguments.parse(["cat", "p1"])


def test_put():
    args = Arguments.parse(["put", "p1", "/a.py"])

    assert args.file is None

    args = Arguments.parse(["put", "p1", "/a.py", "local.py"])

    assert args.file == "local.py"


def test_exec():
    args = Arguments.parse(["exec", "p1", "--wait-port=3000", "npm", "run", "dev"])

    assert args.wait_port == 3000
    assert args.command == ["npm", "run", "dev"]


def test_command_arguments_that_resemble_flags():
    args = Arguments.parse(["exec", "p1", "ls", "-la", "--debug"])

    assert not args.debug
    assert args.command == ["ls", "-la", "--debug"]


def test_serve():
    args = Arguments.parse(["serve", "/srv/project"])

    assert args.action == "serve"
    assert args.root == "/srv/project"
    assert args.port == 7070
    assert args.events_port == 7071
    assert args.poll_interval == 1000


def test_global_options():
    args = Arguments.parse(
        [
            "--api=https://api.example/v1",
            "--token=abc",
            "--endpoint=tcp://10.0.0.1:7070",
            "--events-endpoint=tcp://10.0.0.1:7071",
            "--no-live",
            "--debug",
            "cat",
            "p1",
            "/a.py",
        ]
    )

    assert args.api == "https://api.example/v1"
    assert args.token == "abc"
    assert args.endpoint == "tcp://10.0.0.1:7070"
    assert args.events_endpoint == "tcp://10.0.0.1:7071"
    assert not args.live
    assert args.debug


def test_timeout():
    args = Arguments.parse(["--timeout=1234", "tree", "p1"])
    assert args.timeout == 1234

    with pytest.raises(SystemExit):
        Arguments.parse(["--timeout=-1", "tree", "p1"])

    with pytest.raises(SystemExit):
        Arguments.parse(["--timeout=abc", "tree", "p1"])
