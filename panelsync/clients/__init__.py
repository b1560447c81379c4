from panelsync.clients.pasarguard import PasarGuardClient
from panelsync.clients.threexui import ThreeXUIClient

__all__ = ["PasarGuardClient", "ThreeXUIClient"]
