"""
Security utilities for keyroom.
Provides room id sanitization, username validation and security event logging.
"""
import logging
import re
from typing import Optional

security_logger = logging.getLogger('security')

ROOM_ID_STRIP = re.compile(r'[^A-Za-z0-9-]')
MAX_ROOM_ID_LENGTH = 64
MAX_USERNAME_LENGTH = 32

# Reserved for system-authored messages
RESERVED_USERNAMES = {'system'}

# Control characters break log lines and client rendering
CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')


def sanitize_room_id(room_id: Optional[str]) -> str:
    """
    Strip every character outside [A-Za-z0-9-] from a room id.

    Args:
        room_id: Raw room id from the request

    Returns:
        Sanitized id, possibly empty
    """
    if not room_id:
        return ""
    return ROOM_ID_STRIP.sub('', str(room_id))[:MAX_ROOM_ID_LENGTH]


def normalize_username(username: Optional[str]) -> Optional[str]:
    """
    Validate a username for use as a room identity.

    Args:
        username: Raw username

    Returns:
        The stripped username, or None if it is unusable
    """
    if not isinstance(username, str):
        return None

    name = username.strip()
    if not name or len(name) > MAX_USERNAME_LENGTH:
        return None
    if CONTROL_CHARS.search(name):
        return None
    if name.lower() in RESERVED_USERNAMES:
        return None
    return name


def log_security_event(event_type: str, details: dict):
    """Log a security-relevant event. Never pass secrets in details."""
    security_logger.warning(f"SECURITY_EVENT: {event_type} - {details}")
