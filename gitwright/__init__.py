"""Gitwright - a conversational software-engineering agent for GitHub repositories."""

__version__ = "0.1.0"

from gitwright.config import Config

__all__ = ["Config", "__version__"]
