"""AccessGate: access authorization engine for gateway-proxied APIs."""

__version__ = "0.1.0"
