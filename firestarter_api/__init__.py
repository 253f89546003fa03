"""Firestarter API: crawl a website, index it, and chat with it."""

__version__ = "0.1.0"
