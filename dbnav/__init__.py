"""Terminal database navigator with tunnel-aware connection management."""

__version__ = "0.1.0"
