"""
Linux SSH client

Blocking SSH client core: session lifecycle, remote command execution with
optional pseudo-terminal, and SCP file transfer, with asyncio wrappers.
"""

__version__ = "0.1.0"

__all__ = [
    "channel_io",
    "credentials",
    "engine",
    "exceptions",
    "logger",
    "paramiko_engine",
    "session",
    "settings",
    "terminal_modes",
    "types",
]
