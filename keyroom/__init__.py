"""Passkey-protected chat rooms with polling clients."""

__version__ = "0.1.0"
