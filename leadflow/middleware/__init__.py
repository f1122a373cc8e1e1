"""
Middleware components for request processing.
"""

from leadflow.middleware.request_context import RequestContextMiddleware

__all__ = ["RequestContextMiddleware"]
