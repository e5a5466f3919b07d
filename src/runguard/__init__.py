"""runguard - gated, resumable execution of operational procedures."""

__version__ = "0.1.0"
