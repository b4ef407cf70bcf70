"""
Core modules for invoice billing.

This package contains the billing engine, its outcome taxonomy, the
payment and notification contracts, and the recurring trigger.
"""
