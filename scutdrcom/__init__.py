"""802.1X EAP and Dr.com UDP heartbeat client for campus network authentication."""

__version__ = "3.1.3"
__all__ = ["__version__"]