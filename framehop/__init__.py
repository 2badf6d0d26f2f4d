"""Stack frame unwinding rules, frame addresses and unsigned address arithmetic."""

__version__ = "0.7.2"