"""Identity, session, and tenant-authorization service."""

__version__ = "0.1.0"
