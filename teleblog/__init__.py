"""TeleBlog: publish a personal blog straight from a Telegram chat."""

__version__ = "1.0.0"
