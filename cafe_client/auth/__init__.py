"""
Authentication package for the Cafe POS client.

This package contains session management including secure refresh token
storage, proactive and reactive session renewal, and the logout signal.
"""
