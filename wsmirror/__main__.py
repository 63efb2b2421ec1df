"""
Module implementing the command-line interface and invoking the main logic of wsmirror.

wsmirror keeps a local view of a remote workspace: its file tree and the contents of
the files being worked on. It prefers a live connection to the agent running inside the
workspace, which also reports changes as they happen, and falls back to the slower
project API when that connection can't be established. The same program can also act
as the agent for a local directory, which is mostly useful for development.
"""

import signal
import sys
from typing import List, NoReturn, Optional

import wsmirror.constants as constants
from wsmirror.logger import log, set_debug
import wsmirror.operations as operations
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Run the requested action with the given arguments.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    # Only errors are shown unless debugging.
    set_debug(args.debug)

    # Run the agent or access a workspace.
    ops: operations.Operations

    if args.action == "serve":
        ops = operations.ServeOperations(args)
    else:
        ops = operations.WorkspaceOperations(args)

    try:
        exit_code = ops.run()
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"failed to run command: {e}")
        exit_code = constants.ERROR_CODE

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
