"""Kubernetes operator managing the lifecycle of Memcached databases."""

__version__ = "0.1.0"
