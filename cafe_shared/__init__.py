"""
Shared components for the Cafe POS client.

This package contains data models, interfaces, exceptions and logging
configuration used across the client packages.
"""
