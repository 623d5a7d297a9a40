"""Retry and backoff policy for failed booking attempts."""

from .backoff import BackoffController, RetryDecision

__all__ = ["BackoffController", "RetryDecision"]
