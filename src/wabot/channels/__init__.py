"""
Transports that connect the bot to the messaging network.
"""

from .base import Transport, TransportHandle, TransportOptions

__all__ = ["Transport", "TransportHandle", "TransportOptions"]
