"""CueCard: live conversation suggestions from mic and system audio."""

__version__ = "0.1.0"
