import asyncio
import logging
import os
from typing import Dict, List, Optional

from pyfcm import FCMNotification


logger = logging.getLogger(__name__)


class NoopPush:

    enabled = False

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        return


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        for token in tokens:
            # pyfcm is sync
            await asyncio.to_thread(
                self._client.notify,
                fcm_token=token,
                notification_title=title,
                notification_body=body,
                data_payload=data or {},
            )


_push = None


def get_push():
    global _push
    if _push is not None:
        return _push
    service_account_file = os.getenv("FCM_SERVICE_ACCOUNT_FILE")
    project_id = os.getenv("FCM_PROJECT_ID")
    if not service_account_file or not project_id:
        _push = NoopPush()
        return _push
    _push = FcmPush(service_account_file, project_id)
    logger.info("FCM push notifications enabled for project %s", project_id)
    return _push


def set_push(push) -> None:
    global _push
    _push = push
