"""Premium entitlement sync: reconciles billing provider state into per-user entitlements."""

__version__ = "1.0.0"
