"""
Caches used by the contact sync pipeline.
"""

from .message_cache import MessageCache

__all__ = ["MessageCache"]
