"""Module with the logic of the command-line actions."""

from .common import AsyncOperations, Operations
from .serve import ServeOperations
from .workspace import WorkspaceOperations

__all__ = [
    "AsyncOperations",
    "Operations",
    "ServeOperations",
    "WorkspaceOperations",
]
