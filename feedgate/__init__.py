"""feedgate: stateless feed authorization in front of a feed-building engine."""

__version__ = "0.1.0"
