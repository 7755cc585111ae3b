"""Right-to-erasure pipeline: scheduled deletion, recovery, verified erasure, certificates."""

__version__ = "0.1.0"
