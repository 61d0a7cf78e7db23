"""postqueue: scheduled social-post delivery pipeline."""

__version__ = "0.1.0"
