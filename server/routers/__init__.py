"""HTTP and WebSocket routers for the Value Cards server."""
