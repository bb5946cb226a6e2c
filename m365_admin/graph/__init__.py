from .client import GraphClient, GraphAPIError

__all__ = ["GraphClient", "GraphAPIError"]
