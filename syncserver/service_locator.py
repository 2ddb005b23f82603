"""Service locator for the running coordinator."""

from typing import Optional

from syncserver.coordinator import ReconciliationCoordinator
from syncserver.exceptions import ServiceNotReady

_coordinator: Optional[ReconciliationCoordinator] = None


def set_coordinator(coordinator: Optional[ReconciliationCoordinator]):
    """Set global coordinator instance"""
    global _coordinator
    _coordinator = coordinator


def get_coordinator() -> ReconciliationCoordinator:
    """
    Get global coordinator instance.

    Raises:
        ServiceNotReady: If the application has not finished starting
    """
    if _coordinator is None:
        raise ServiceNotReady("Sync coordinator is not running")
    return _coordinator
