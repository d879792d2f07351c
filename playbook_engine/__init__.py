"""Playbook Engine: versioned playbook library with vector search, ranking and resolution."""

__version__ = "1.0.0"
