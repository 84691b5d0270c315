"""Admin Review Hub: presence, review state, audit and notification core."""

__version__ = "0.4.0"
