"""PeerLink relay web application."""
