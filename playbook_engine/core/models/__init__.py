"""Pydantic models for configuration and LLM routing."""
