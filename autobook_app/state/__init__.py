"""
Session state machine module.

Defines the booking session lifecycle and validates transitions between
initializing → waiting_authentication → searching → booking → succeeded/failed.
"""
