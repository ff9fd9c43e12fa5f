"""
HTTP surface of the catalog gateway.
"""

from server.api.server import GatewayServer, create_app

__all__ = ["GatewayServer", "create_app"]
