"""
Site Status — audit worker and read-side API for tracked websites.
"""

__version__ = "2.0.0"
