"""IPv6 router advertisement option plugins, NDP types and system networking helpers."""

__version__ = "0.1.0"