"""
Core modules for AI Budget Governor.

This package contains budget health evaluation, rate limiting, routing
decisions, cost accounting and the streaming relay.
"""
