"""
Core package for shared utilities.

Configuration, structured logging, the error taxonomy and the retry
primitive used by every storefront service.
"""
