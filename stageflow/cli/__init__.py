"""Command-line interface for stageflow."""
