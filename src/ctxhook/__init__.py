"""ctxhook - intent-driven context assembly and lifecycle hooks for AI assistants."""

__version__ = "0.3.0"
