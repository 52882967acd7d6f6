"""Ground station for a serially linked rover."""

__version__ = "0.1.0"
