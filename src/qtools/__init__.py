"""qtools - service orchestration for Quilibrium nodes."""

__version__ = "0.1.0"
