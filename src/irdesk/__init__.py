"""IRDesk - Security Incident Response Manager."""

__version__ = "0.1.0"
