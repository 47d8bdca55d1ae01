"""Background import engine for precast element types."""

__version__ = "0.1.0"
