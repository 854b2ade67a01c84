"""SnapSend: move files and clipboard text between nearby devices."""

__version__ = "1.0.0"
