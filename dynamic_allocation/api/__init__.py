"""
API module for the allocation engine.

- client.py: Client for schedulers and delivery integrations
- server.py: FastAPI server wrapping the lifecycle controller
"""

from .client import AllocationServiceClient, get_client

__all__ = ["AllocationServiceClient", "get_client"]
