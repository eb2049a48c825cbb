"""Task lifecycle and agent process supervision for multi-role chatrooms."""

__version__ = "0.1.0"
