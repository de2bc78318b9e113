"""
Background cleanup worker for rooms whose deletion grace window has elapsed.
"""
import asyncio
import logging

from keyroom.room_manager import RoomManager
from keyroom.storage import SnapshotWriter

logger = logging.getLogger(__name__)


def cleanup_deleted_rooms(manager: RoomManager, writer: SnapshotWriter) -> list:
    """Purge expired rooms and persist the registry if anything changed."""
    purged = manager.purge_expired()
    if purged:
        logger.info(f"Purged deleted rooms: {purged}")
        writer.schedule(manager.snapshot())
    return purged


async def cleanup_loop(manager: RoomManager, writer: SnapshotWriter, interval: float):
    """Run cleanup every `interval` seconds until cancelled."""
    while True:
        try:
            cleanup_deleted_rooms(manager, writer)
        except Exception as e:
            logger.error(f"Cleanup error: {e}", exc_info=True)
        await asyncio.sleep(interval)
