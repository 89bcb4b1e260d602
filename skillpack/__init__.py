"""Plugin runtime: skills, commands and tool connectors for model sessions."""

__version__ = "0.1.0"
