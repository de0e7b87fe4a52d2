"""Concrete implementations of the stageflow ports."""
