"""
Utility functions module.

Shared helpers for timestamp handling and masking of personal data.

Time Semantics:
- All persisted timestamps are timezone-aware UTC
- Timestamps are serialized as ISO8601 strings
- Deadlines and timeouts use the event loop's monotonic clock, never wall-clock time
"""
