"""Local HTTP control API for WinBackup."""

__version__ = "1.0.0"
