"""anisync: keep anime and manga lists in sync with remote catalog services."""

__version__ = "0.1.0"
