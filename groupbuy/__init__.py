"""Group-buy order submission and inventory core."""

__version__ = "0.1.0"
