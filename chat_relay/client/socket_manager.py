import asyncio
import enum
import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Set

import socketio
from socketio import exceptions

from chat_relay.utils.errors import AuthenticationError


logger = logging.getLogger(__name__)

# disconnect reason python-socketio reports for a deliberate client close
CLIENT_DISCONNECT = "client disconnect"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ERROR = "error"


@dataclass
class SocketListener:
    id: str
    event: str
    callback: Callable[..., Any]


class MemoryTokenStore:

    def __init__(self, token: Optional[str] = None) -> None:
        self.token = token

    async def get_token(self) -> Optional[str]:
        return self.token


class SocketManager:

    def __init__(
        self,
        base_url: str,
        token_store,
        fallback_urls: Sequence[str] = (),
        client_factory: Optional[Callable[[], Any]] = None,
        reconnect_interval: float = 1.0,
        max_reconnect_attempts: int = 5,
        probe_timeout: float = 3.0,
        connect_timeout: float = 10.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.url = base_url
        self.fallback_urls = list(fallback_urls)
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.probe_timeout = probe_timeout
        self.connect_timeout = connect_timeout
        self._token_store = token_store
        self._client_factory = client_factory or (lambda: socketio.AsyncClient(reconnection=False))
        self._sleep = sleep
        self._client = None
        self._listeners: List[SocketListener] = []
        self._bound_events: Set[str] = set()
        self._status = ConnectionStatus.DISCONNECTED
        self._connected = asyncio.Event()
        self._reconnect_attempts = 0
        self._recovery_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    async def initialize(self):
        """
        Connect to the current URL with the stored token.

        Raises AuthenticationError when no token is stored. A failed handshake
        returns None and leaves recovery (fallback probe, then backoff)
        running in the background.
        """
        token = await self._require_token()
        self._closing = False
        await self._teardown_client()
        if await self._open(self.url, token):
            return self._client
        self._schedule_recovery(probe_first=True)
        return None

    async def get_client(self, timeout: float = 5.0):
        if self._client is not None and self._status is ConnectionStatus.CONNECTED:
            return self._client
        recovering = self._recovery_task is not None and not self._recovery_task.done()
        if self._status is not ConnectionStatus.CONNECTING and not recovering:
            client = await self.initialize()
            if client is not None:
                return client
        await self.wait_until_connected(timeout)
        return self._client

    async def wait_until_connected(self, timeout: float = 5.0) -> None:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectionError("Socket connection timeout") from exc

    async def emit(self, event: str, data: Any = None) -> None:
        client = await self.get_client()
        await client.emit(event, data)

    async def disconnect(self) -> None:
        self._closing = True
        if self._recovery_task is not None and not self._recovery_task.done():
            self._recovery_task.cancel()
        self._recovery_task = None
        await self._teardown_client()
        self._set_status(ConnectionStatus.DISCONNECTED)

    def add_listener(self, event: str, callback: Callable[..., Any]) -> str:
        listener = SocketListener(id=uuid.uuid4().hex, event=event, callback=callback)
        self._listeners.append(listener)
        if self._client is not None:
            self._bind_event(self._client, event)
        return listener.id

    def remove_listener(self, listener_id: str) -> bool:
        for index, listener in enumerate(self._listeners):
            if listener.id == listener_id:
                del self._listeners[index]
                return True
        return False

    def remove_listeners(self, event: str, callback: Optional[Callable[..., Any]] = None) -> int:
        kept = [
            l for l in self._listeners
            if l.event != event or (callback is not None and l.callback != callback)
        ]
        removed = len(self._listeners) - len(kept)
        self._listeners = kept
        return removed

    def listener_count(self, event: Optional[str] = None) -> int:
        return sum(1 for l in self._listeners if event is None or l.event == event)

    async def _require_token(self) -> str:
        token = await self._token_store.get_token()
        if not token:
            self._set_status(ConnectionStatus.ERROR)
            raise AuthenticationError("Cannot initialize socket, user not authenticated")
        return token

    async def _open(self, url: str, token: str) -> bool:
        client = self._client_factory()
        client.on("disconnect", self._disconnect_handler(client))
        self._client = client
        self._bound_events = set()
        for event in {l.event for l in self._listeners}:
            self._bind_event(client, event)

        self._set_status(ConnectionStatus.CONNECTING)
        logger.info("Connecting to socket server at %s", url)
        try:
            await client.connect(
                url,
                auth={"token": token},
                transports=["websocket", "polling"],
                wait_timeout=self.connect_timeout,
            )
        except exceptions.ConnectionError as exc:
            logger.warning("Socket connection to %s failed: %s", url, exc)
            if self._client is client:
                self._client = None
            self._set_status(ConnectionStatus.ERROR)
            return False

        self.url = url
        self._reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info("Socket connected, %d listeners bound", len(self._listeners))
        return True

    async def _teardown_client(self) -> None:
        client, self._client = self._client, None
        self._bound_events = set()
        if client is not None and client.connected:
            await client.disconnect()

    def _disconnect_handler(self, client):
        async def on_disconnect(reason=None):
            # a replaced transport closing is not our disconnect
            if client is not self._client:
                return
            self._set_status(ConnectionStatus.DISCONNECTED)
            await self._dispatch("disconnect", reason)
            if self._closing or reason == CLIENT_DISCONNECT:
                return
            logger.info("Socket disconnected (%s), scheduling reconnect", reason)
            self._schedule_recovery(probe_first=False)
        return on_disconnect

    def _schedule_recovery(self, probe_first: bool) -> None:
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        self._recovery_task = asyncio.create_task(self._recover(probe_first))

    async def _recover(self, probe_first: bool) -> None:
        try:
            if probe_first and await self._reconnect_via_fallback():
                return
            while not self._closing:
                if self._reconnect_attempts >= self.max_reconnect_attempts:
                    logger.warning("Max reconnection attempts reached, trying fallback URLs")
                    self._reconnect_attempts = 0
                    if await self._reconnect_via_fallback():
                        return
                    continue

                self._reconnect_attempts += 1
                delay = self.reconnect_interval * 2 ** (self._reconnect_attempts - 1)
                logger.info(
                    "Attempting reconnect %d/%d in %.1fs",
                    self._reconnect_attempts, self.max_reconnect_attempts, delay,
                )
                await self._sleep(delay)
                if self._closing or self._status is ConnectionStatus.CONNECTED:
                    return
                if await self._open(self.url, await self._require_token()):
                    return
                if await self._reconnect_via_fallback():
                    return
        except AuthenticationError:
            logger.error("Reconnect aborted: no stored token")

    async def _reconnect_via_fallback(self) -> bool:
        token = await self._require_token()
        url = await self._probe_fallback_urls(token)
        if url is None:
            return False
        return await self._open(url, token)

    async def _probe_fallback_urls(self, token: str) -> Optional[str]:
        for url in self.fallback_urls:
            if url == self.url:
                continue
            probe = self._client_factory()
            try:
                await asyncio.wait_for(
                    probe.connect(url, auth={"token": token}, transports=["websocket"], wait_timeout=self.probe_timeout),
                    timeout=self.probe_timeout,
                )
            except (exceptions.ConnectionError, asyncio.TimeoutError) as exc:
                logger.info("Fallback socket URL %s failed: %s", url, exc)
                continue
            finally:
                if probe.connected:
                    await probe.disconnect()
            logger.info("Fallback URL %s is working, switching to it", url)
            return url
        logger.warning("All fallback URLs failed")
        return None

    def _bind_event(self, client, event: str) -> None:
        # disconnect is dispatched from the manager's own handler
        if event == "disconnect" or event in self._bound_events:
            return
        self._bound_events.add(event)

        async def dispatch(*args):
            await self._dispatch(event, *args)

        client.on(event, dispatch)

    async def _dispatch(self, event: str, *args) -> None:
        for listener in [l for l in self._listeners if l.event == event]:
            result = listener.callback(*args)
            if inspect.isawaitable(result):
                await result

    def _set_status(self, status: ConnectionStatus) -> None:
        self._status = status
        if status is ConnectionStatus.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
