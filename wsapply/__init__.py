"""wsapply: atomic application of generated workspace change bundles."""

__version__ = "0.3.0"
