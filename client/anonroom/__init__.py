"""Anonroom: client engine for ephemeral anonymous chat rooms."""

__version__ = "0.1.0"
