"""Wix Pricing Plans -> Google Sheet -> Telegram channel membership sync."""

__version__ = "1.0.0"
