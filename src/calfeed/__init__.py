"""Calendar feed synchronization for CalDAV and WebCal sources."""

__version__ = "0.1.0"
