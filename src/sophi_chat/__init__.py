"""
Sophi Chat client core.

Connects to the Sophi assistant over an authenticated Socket.IO channel and
turns its heterogeneous wire format into an ordered stream of chat events.

Provides:
- Bearer token login and durable token storage
- Supervised real-time connection with bounded reconnection
- Message decoding (text, transcriptions, graphs, audio replies)
- Microphone capture for voice messages
"""

from sophi_chat.version import __version__

__all__ = ["__version__"]
