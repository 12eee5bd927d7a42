"""
Core modules for Benefit Guard.

This package contains query key normalization, per-key dispatch,
cache reuse rules and the query orchestrator.
"""
