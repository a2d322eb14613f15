"""HTTP and websocket surface of the voice ordering service."""
