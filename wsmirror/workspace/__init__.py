"""
Primitive operations on a workspace.

A workspace is a directory tree that lives somewhere else, usually inside a remote
sandbox. It runs an agent (WorkspaceService) that exposes a small set of primitive file
operations over RPC and publishes the changes made inside of it. WorkspaceClient is the
other end of that connection.
"""
