"""
Core modules for Token Meter.

This package contains the balance ledger, settlement markers, rate limiting,
pricing, and the metering service that sequences them.
"""
