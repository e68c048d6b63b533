"""modelkeeper - model acquisition and local storage for local inference."""

__version__ = "0.1.0"
