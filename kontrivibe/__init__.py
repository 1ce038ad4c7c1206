"""KontriVibe backend — subscriptions, payments and entitlements."""

__version__ = "0.3.0"
