"""Consistency core of the quick-commerce order pipeline."""

__version__ = "0.1.0"
