"""waked executes programs when the host resumes from sleep."""

__version__ = "0.3.0"
