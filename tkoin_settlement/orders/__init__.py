"""P2P order lifecycle and expiry."""
