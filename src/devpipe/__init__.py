"""devpipe - workflow-driven dispatch and completion engine."""

__version__ = "0.1.0"
