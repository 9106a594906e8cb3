"""Groover operator: per-guild listening-party worker lifecycle.

Enforces at most one worker pod per guild, creates and tears workers down on
bus commands, relays voice server credentials from the Discord gateway to the
running worker, and reaps failed workers.
"""

__version__ = "0.1.0"
