from .lowlevel import NotificationOptions, Server
from .models import InitializationOptions
from .session import ServerSession

__all__ = ["InitializationOptions", "NotificationOptions", "Server", "ServerSession"]
