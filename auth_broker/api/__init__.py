"""HTTP surface of the auth broker."""
