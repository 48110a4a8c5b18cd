"""Configuration loading."""

from .manager import ConfigurationManager

__all__ = ["ConfigurationManager"]
