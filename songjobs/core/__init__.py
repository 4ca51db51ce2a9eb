"""
Core modules for songjobs.

This package contains quota consumption, artifact persistence, plan
grants and the reconciliation engine.
"""
