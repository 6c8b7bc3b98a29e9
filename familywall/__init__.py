"""FamilyWall: calendar sync and local event cache for a family wall display."""

__version__ = "0.3.0"
