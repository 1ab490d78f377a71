"""Cluster fan-out for multi-server Quilibrium nodes.

Usage:
    from qtools.cluster import ClusterCoordinator, ClusterOperation

    coordinator = ClusterCoordinator(servers)
    results = await coordinator.fan_out(None, ClusterOperation.start())
    for server_id, result in results.items():
        print(server_id, result.ok, result.error_code)
"""

from .coordinator import ClusterCoordinator, ClusterOperation, dedupe_servers
from .remote import RemoteChannel, SSHChannel
from .types import ClusterServer, RemoteResult, ServerResult, summarize

__all__ = [
    # Main classes
    "ClusterCoordinator",
    "ClusterOperation",
    "RemoteChannel",
    "SSHChannel",
    # Type classes
    "ClusterServer",
    "RemoteResult",
    "ServerResult",
    # Helpers
    "dedupe_servers",
    "summarize",
]
