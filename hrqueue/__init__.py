"""HR Queue - background jobs and notification dispatch.

Job scheduling, retry/backoff and multi-channel notification delivery for the
workforce-management platform.
"""

__version__ = "0.1.0"
