"""Module with fixtures that run a workspace agent for tests that need a live one."""

import multiprocessing
import random

import pytest

import wsmirror.rpc as rpc
from wsmirror.workspace.common import Session
from wsmirror.workspace.service import WorkspaceService


def pytest_addoption(parser):
    parser.addoption(
        "--no-network",
        action="store_true",
        default=False,
        help="Skip tests that talk to a workspace agent over ZeroMQ",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "network: mark test as requiring a local workspace agent"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--no-network"):
        skip_network = pytest.mark.skip(reason="skipped with --no-network option")

        for item in items:
            if "network" in item.keywords:
                item.add_marker(skip_network)


def start_server_process(server: rpc.Server, endpoint: str) -> multiprocessing.Process:
    def run_server():
        server.serve(endpoint)

    # Forking allows the server to be defined anywhere, including inside a test
    proc = multiprocessing.get_context("fork").Process(target=run_server, daemon=True)
    proc.start()

    return proc


@pytest.fixture
def agent_port():
    return random.randrange(30000, 32000)


@pytest.fixture
def agent_session(tmp_path, agent_port):
    """Serve tmp_path as a workspace and return a session for it."""
    token = "secret"

    server = rpc.Server(WorkspaceService(str(tmp_path)), token=token)
    proc = start_server_process(server, f"tcp://127.0.0.1:{agent_port}")

    try:
        yield Session(
            workspace_id="test",
            endpoint=f"tcp://127.0.0.1:{agent_port}",
            token=token,
        )
    finally:
        proc.terminate()
        proc.join()
