"""
HTTP middleware for the identity service.
"""

from umbrella.middleware.request_id import RequestIdMiddleware

__all__ = ["RequestIdMiddleware"]
