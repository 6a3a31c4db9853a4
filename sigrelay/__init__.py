"""sigrelay relays WebRTC signaling messages between two peers."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('sigrelay')
