"""
Health monitoring module.

This module provides:
- Health check probes (database, memory, filesystem, internal API, system load)
- Request performance metrics and threshold alerts
- Health, metrics and Prometheus endpoints
"""

__version__ = "1.0.0"
