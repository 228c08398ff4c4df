"""OpenClaw gateway supervision for ephemeral sandbox containers."""

__version__ = "0.1.0"
