"""pong0: challenge-gated IP information lookup."""

__version__ = "0.1.0"

__all__ = ["__version__"]
