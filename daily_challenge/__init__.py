"""Daily writing challenges for the blogging platform."""

__version__ = "0.1.0"
