"""toolgate - admission control and prepare/commit sessions for agent tool calls."""

__version__ = "0.4.0"

__all__ = ["__version__"]
