"""
Development relay server for end-to-end encrypted messaging.
"""

from .main import app, create_app
from .state import RelayState

__all__ = ['app', 'create_app', 'RelayState']
