"""Top SQL storage, query, HTTP handler and topology controller layer."""

__version__ = "0.1.0"
__all__ = ["models", "store", "query", "service", "controller"]