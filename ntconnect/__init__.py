"""Device agent: authentication, inventory reporting and remote shell sessions."""

__version__ = "0.1.0"