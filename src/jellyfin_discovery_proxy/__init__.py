"""Jellyfin discovery proxy package"""

import importlib.metadata as importlib_metadata

try:
    __version__ = importlib_metadata.version("jellyfin-discovery-proxy")
except Exception:  # pragma: no cover - defensive fallback for source checkouts
    __version__ = "1.3.3"
