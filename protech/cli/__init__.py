"""protech command-line interface."""
