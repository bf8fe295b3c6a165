"""
Transport layer for stateset-gateway.

Provides the HTTP transport used to reach the remote business API.
"""

from stateset_gateway.transport.http import HttpTransport

__all__ = [
    "HttpTransport",
]
