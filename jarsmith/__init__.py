"""Jarsmith build-and-deploy job engine."""

__version__ = "0.1.0"
