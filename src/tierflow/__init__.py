"""Tierflow: subscription tier transitions that keep user data intact."""

__version__ = "0.4.0"
