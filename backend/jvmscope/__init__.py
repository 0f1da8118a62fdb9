"""JvmScope -- JVM discovery and topology reconciliation service."""

__version__ = "1.0.0"
