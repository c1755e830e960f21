"""Ember operator node: threshold custody of a signing key across registered operators."""

__version__ = "0.1.0"
