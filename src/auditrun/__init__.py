"""auditrun: automated smart-contract audit pipeline."""

__version__ = "0.1.0"
