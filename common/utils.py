"""Small helpers shared by both replicas."""

import time
import uuid


def generate_uuid() -> str:
    """
    Generate a new UUID4 string.

    Returns:
        String representation of UUID4
    """
    return str(uuid.uuid4())


def now_ms() -> int:
    """
    Current wall-clock time in integer milliseconds.

    Returns:
        Milliseconds since the epoch
    """
    return int(time.time() * 1000)
