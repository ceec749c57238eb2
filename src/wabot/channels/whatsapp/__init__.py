"""
WhatsApp transport via the Node.js bridge.
"""

from .client import WhatsAppBridgeTransport, WhatsAppMessage, translate_bridge_event

__all__ = ["WhatsAppBridgeTransport", "WhatsAppMessage", "translate_bridge_event"]
