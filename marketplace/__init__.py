"""Marketplace funding core: request workflow, contract funding and wallet settlement."""

__version__ = "1.0.0"
