"""Shared data models and services used by the engine and adapters."""
