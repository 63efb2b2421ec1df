"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
from typing import List, Optional

from wsmirror.constants import PROTOCOL_VERSION, VERSION


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    action: str

    project: str
    path: str
    file: Optional[str]
    command: List[str]
    wait_port: Optional[int]
    depth: int

    root: str
    port: int
    events_port: int
    poll_interval: int

    config: str

    api: Optional[str]
    token: Optional[str]
    endpoint: Optional[str]
    events_endpoint: Optional[str]

    debug: bool
    live: bool
    timeout: Optional[int]

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Mirror the files of a remote workspace.",
            usage="wsmirror [option...] action [arg...]",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (protocol {PROTOCOL_VERSION})",
            help="show the program version and protocol version",
        )

        # Path to (optional) config file
        parser.add_argument(
            "--config",
            type=str,
            help="path to config file (default is ~/.wsmirror/config)",
            default="~/.wsmirror/config",
        )

        # Fallback API, overrides config file
        parser.add_argument("--api", type=str, help="base URL of the fallback API")
        parser.add_argument("--token", type=str, help="authentication token")

        # Direct workspace connection without the session endpoint of the API
        parser.add_argument(
            "--endpoint", type=str, help="endpoint of the workspace agent"
        )
        parser.add_argument(
            "--events-endpoint", type=str, help="endpoint of the workspace change feed"
        )

        # Disable the live connection and only use the fallback API
        parser.add_argument(
            "--no-live",
            action="store_false",
            help="only access the workspace through the fallback API",
            dest="live",
        )

        # Configure network timeout, defaults to config file
        parser.add_argument(
            "--timeout",
            type=cls._parse_timeout,
            help="timeout for connecting to the workspace in milliseconds",
        )

        # Enable debug output for development
        parser.add_argument(
            "--debug", action="store_true", help="enable debug information"
        )

        actions = parser.add_subparsers(dest="action", metavar="action")
        actions.required = True

        tree = actions.add_parser("tree", help="print the file tree of a workspace")
        tree.add_argument("project", type=str, help="project of the workspace")
        tree.add_argument("path", type=str, nargs="?", default="/", help="directory")
        tree.add_argument(
            "--depth",
            type=cls._parse_depth,
            default=1,
            help="number of directory levels to expand",
        )

        cat = actions.add_parser("cat", help="print the contents of a file")
        cat.add_argument("project", type=str, help="project of the workspace")
        cat.add_argument("path", type=str, help="file to print")

        put = actions.add_parser("put", help="write a file from stdin or a local file")
        put.add_argument("project", type=str, help="project of the workspace")
        put.add_argument("path", type=str, help="file to write")
        put.add_argument("file", type=str, nargs="?", help="local file to upload")

        watch = actions.add_parser("watch", help="print changes made in a workspace")
        watch.add_argument("project", type=str, help="project of the workspace")
        watch.add_argument("path", type=str, nargs="?", default="/", help="directory")

        exec_ = actions.add_parser("exec", help="run a command in a workspace")
        exec_.add_argument("project", type=str, help="project of the workspace")
        exec_.add_argument(
            "--wait-port",
            type=int,
            help="wait for the command to open a port and print its preview URL",
        )
        exec_.add_argument(
            "command", type=str, nargs=argparse.REMAINDER, help="command to run"
        )

        serve = actions.add_parser("serve", help="run a workspace agent")
        serve.add_argument("root", type=str, help="directory to expose")
        serve.add_argument(
            "--port", type=int, default=7070, help="port to use for file operations"
        )
        serve.add_argument(
            "--events-port", type=int, default=7071, help="port to use for changes"
        )
        serve.add_argument(
            "--poll-interval",
            type=cls._parse_timeout,
            default=1000,
            help="interval between change scans in milliseconds",
        )

        return parser

    @staticmethod
    def _parse_timeout(arg: str) -> int:
        try:
            val = int(arg)
            assert val > 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number > 0")

    @staticmethod
    def _parse_depth(arg: str) -> int:
        try:
            val = int(arg)
            assert val >= 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number >= 0")
