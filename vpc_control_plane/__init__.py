"""Branch ENI reclaimer and node assignment GC."""

__version__ = "1.0.0"
