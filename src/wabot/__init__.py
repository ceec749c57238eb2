"""
wabot - a WhatsApp bot with a self-healing connection lifecycle.
"""

__version__ = "1.0.0"
