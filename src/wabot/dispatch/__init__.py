"""
Inbound message dispatch.
"""

from .base import MessageDispatcher, ReadyInfo
from .handler import CommandDispatcher

__all__ = ["CommandDispatcher", "MessageDispatcher", "ReadyInfo"]
