"""
Cafe POS client.

Session and payment resilience layer used by the point-of-sale screens: an
authenticated HTTP pipeline with single-flight session renewal, durable
refresh credentials, and exactly-once payment confirmation.
"""

__version__ = "1.0.0"
