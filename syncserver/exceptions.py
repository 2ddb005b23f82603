"""Exceptions raised only by the sync server's HTTP layer."""

from common.exceptions import DocSyncError


class AuthenticationRequired(DocSyncError):
    """
    Raised when a request carries no bearer token or an unknown one.
    """
    pass


class ServiceNotReady(DocSyncError):
    """
    Raised when a request arrives before the coordinator has been started.
    """
    pass
