"""Retention and secure deletion lifecycle engine."""
