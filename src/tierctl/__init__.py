"""tierctl - declarative reconciliation and autoscaling for a web tier."""

__version__ = "0.1.0"
