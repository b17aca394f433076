"""HTTP and WebSocket front end."""
