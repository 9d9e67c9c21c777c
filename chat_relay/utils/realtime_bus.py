import logging
import os
from typing import Optional

import socketio


logger = logging.getLogger(__name__)


def get_client_manager() -> Optional[socketio.AsyncManager]:
    """
    Room broadcasts go through Redis pub/sub when REDIS_URL is set so that a
    user's room reaches sockets held by other worker processes. Without it
    the server keeps rooms in process.
    """
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    logger.info("Using Redis client manager for Socket.IO rooms")
    return socketio.AsyncRedisManager(url)
