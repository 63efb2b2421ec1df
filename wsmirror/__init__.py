"""Keep a local view of a remote workspace's file system coherent with the remote."""
