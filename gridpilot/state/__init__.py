"""
State package.

Store port and the JSON file store shared with the dashboard.
"""

from gridpilot.state.store import FileBotStore, StorePort

__all__ = ["FileBotStore", "StorePort"]
