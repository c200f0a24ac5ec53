"""IHHT session engine: interval hypoxic-hyperoxic training sessions."""

__version__ = "0.1.0"
