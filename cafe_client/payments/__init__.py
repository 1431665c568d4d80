"""
Payment confirmation for the Cafe POS client.

Push channel subscription, status polling and the reconciler that merges
them into a single terminal outcome per order.
"""
