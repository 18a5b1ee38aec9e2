"""PeerLink signalling relay."""
