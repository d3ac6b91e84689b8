"""Local cache, sync engine and metadata search for leyline documents."""

__version__ = "0.1.0"
