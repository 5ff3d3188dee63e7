from .client import InboundDescriptor, PanelClient, client_settings, normalize_url
from .errors import AuthError, PanelError

__all__ = [
    "AuthError",
    "InboundDescriptor",
    "PanelClient",
    "PanelError",
    "client_settings",
    "normalize_url",
]
