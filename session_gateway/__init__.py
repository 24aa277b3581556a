"""
WhatsApp Session Gateway
========================

Keeps one long-lived WhatsApp Web session connected and exposes it over HTTP:
readiness probes, operator-forced reconnects, and readiness-gated sending.
"""

__version__ = "1.0.0"
