"""
Core modules for the usage meter.

This package contains cost calculation, usage recording, latency
statistics, rollup aggregation, threshold resolution and cost analytics.
"""
