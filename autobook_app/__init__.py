"""
Autobook - Driving-test slot booking orchestration engine

Runs a browser-automation job per user booking configuration, tracks every
run through a lifecycle of states, persists each transition and propagates
it to live status feeds and notification senders.
"""

__version__ = "0.1.0"
__author__ = "Autobook Team"
