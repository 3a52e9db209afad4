"""Marketplace listing watcher: scheduled scraping, dedup and push notifications."""

__version__ = "0.1.0"
