"""crust: cache-backed read model and post-order analytics for a single restaurant."""

__version__ = "0.1.0"
