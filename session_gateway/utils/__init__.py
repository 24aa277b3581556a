"""Small shared helpers for the session gateway."""
