"""mixsync: change-log synchronization service for media-library devices."""

__version__ = "0.1.0"
