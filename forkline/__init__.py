"""Forkline: branching roleplay chat engine."""

__version__ = "0.1.0"
