from .server import NotificationOptions, Server, ServerRequestContext

__all__ = ["NotificationOptions", "Server", "ServerRequestContext"]
