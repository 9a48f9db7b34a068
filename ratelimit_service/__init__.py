"""Descriptor-based rate limiting with YAML configuration and Redis or memcached counters."""

__version__ = "0.1.0"