"""Card payments and subscriptions core."""

__version__ = "0.1.0"
