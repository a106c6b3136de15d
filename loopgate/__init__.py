"""loopgate: local domains over trusted HTTPS."""

__version__ = "0.1.0"
