"""Card settlement reconciliation: processor PDF lines vs. merchant CSV transactions."""

__version__ = "1.0.0"
