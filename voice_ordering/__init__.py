"""Voice ordering session and conversation orchestration service."""

__version__ = "1.0.0"
