from order.host.git import GitCommandError, Workspace
from order.host.github import (
    CheckRun,
    CodeHost,
    GitHubCLIHost,
    HostError,
    PRSnapshot,
    PRSummary,
)
from order.host.tracker import BeadsTracker, TrackerError

__all__ = [
    "BeadsTracker",
    "CheckRun",
    "CodeHost",
    "GitCommandError",
    "GitHubCLIHost",
    "HostError",
    "PRSnapshot",
    "PRSummary",
    "TrackerError",
    "Workspace",
]
