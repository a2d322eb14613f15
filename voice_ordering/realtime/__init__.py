"""Streaming voice transport: connection mapping, segmentation and ephemeral tokens."""
