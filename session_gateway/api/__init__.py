"""HTTP surface of the session gateway."""
