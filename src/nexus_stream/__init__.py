"""nexus-stream: streaming completions with reasoning separation and topic extraction."""

__version__ = "0.1.0"
