"""Custodian: retention and secure deletion lifecycle engine."""

__version__ = "0.1.0"
