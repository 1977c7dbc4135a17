"""chatkeep: archive hosted AI chat conversations into a local, normalized store."""

__version__ = "0.4.0"

__all__ = ["__version__"]
