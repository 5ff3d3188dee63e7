class PanelError(Exception):
    """A panel call failed (transport error, timeout or unsuccessful reply)."""


class AuthError(PanelError):
    """Login to the panel was rejected or could not be completed."""
