"""
Command line interface for forge.
"""

__version__ = "2.0.1"
