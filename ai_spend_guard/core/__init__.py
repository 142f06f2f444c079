"""
Core modules for AI Spend Guard.

This package contains the request pipeline, cost estimation,
budget ledger, retry handling and usage recording.
"""
