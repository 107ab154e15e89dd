"""AI-assisted task synthesis, expansion and complexity analysis."""

__version__ = "0.1.0"
