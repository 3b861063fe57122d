"""Realtime relay for a shared drawing board and peer-to-peer video calls."""

__version__ = '0.1.0'
