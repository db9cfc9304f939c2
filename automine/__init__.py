"""
automine: risk-managed autonomous mining controller for the refinORE API.
"""

__version__ = "0.4.0"
