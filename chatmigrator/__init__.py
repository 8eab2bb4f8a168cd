"""Worker that moves ranges of chat databases between MongoDB instances, coordinated through PostgreSQL."""

__version__ = "0.1.0"