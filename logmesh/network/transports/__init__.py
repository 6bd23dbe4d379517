"""
Log service bindings — concrete LogService implementations.
"""

from logmesh.network.transports.http import HttpLogClient

__all__ = ["HttpLogClient"]
