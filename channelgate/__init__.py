"""Multi-tenant messaging channel gateway."""

__version__ = "0.1.0"
