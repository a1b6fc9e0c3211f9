"""Errors raised while parsing protocol frames."""


class MessageDecodeError(ValueError):
    """Raised when an inbound frame cannot be parsed into a known message."""
