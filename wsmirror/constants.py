"""Module defining various global constants."""

# wsmirror version
VERSION = "1.0.0"

# wsmirror protocol spoken between the client and the workspace agent
# The major version must be identical on both sides.
PROTOCOL_VERSION = "1.0.0"

# Special exit code for when wsmirror itself fails.
ERROR_CODE = 254

# Root of every workspace path.
ROOT_PATH = "/"
