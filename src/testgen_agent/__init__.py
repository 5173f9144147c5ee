"""AI-assisted test generation pipeline driven by CLI coding agents."""

__version__ = "0.1.0"
