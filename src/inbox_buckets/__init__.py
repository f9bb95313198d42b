"""Local mailbox cache with buckets, archiving and conversation threading."""

__version__ = "0.1.0"
