"""Continuous profiling storage and scraping, topology discovery and registration, and scraper subscription management for cluster monitoring."""

__version__ = "0.1.0"