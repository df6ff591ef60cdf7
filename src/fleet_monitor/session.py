"""
Device session adapter.

Opens, executes on and closes a management-protocol session to one device.
The wire protocol is provided by a DeviceConnector; the shipped
RouterOSConnector drives the RouterOS API through librouteros.

Sessions are opened per refresh cycle and never reused across cycles.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, AsyncIterator, Callable, Optional

import librouteros
from librouteros.exceptions import (
    ConnectionClosed,
    FatalError,
    LibRouterosError,
    MultiTrapError,
    TrapError,
)

from ._types import ConnectivityKind, DeviceCredentials, now_utc
from .errors import ConnectivityError, ProtocolError

logger = logging.getLogger(__name__)

Row = dict[str, Any]

_UNREACHABLE_ERRNOS = {
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.EHOSTDOWN,
    errno.ENETDOWN,
}

_AUTH_MARKERS = ("invalid user name or password", "cannot log in", "not logged in")


def classify_os_error(exc: BaseException) -> ConnectivityKind:
    """Map a socket-level failure to a connectivity kind."""
    if isinstance(exc, (socket.timeout, TimeoutError, asyncio.TimeoutError)):
        return ConnectivityKind.TIMEOUT
    if isinstance(exc, ConnectionRefusedError):
        return ConnectivityKind.REFUSED
    if isinstance(exc, (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)):
        return ConnectivityKind.CLOSED
    if isinstance(exc, socket.gaierror):
        return ConnectivityKind.UNREACHABLE
    if isinstance(exc, OSError) and exc.errno in _UNREACHABLE_ERRNOS:
        return ConnectivityKind.UNREACHABLE
    return ConnectivityKind.UNREACHABLE


def is_auth_failure(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _AUTH_MARKERS)


class DeviceConnection(ABC):
    """A live protocol connection produced by a connector."""

    @abstractmethod
    async def execute(
        self,
        command: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> list[Row]:
        """
        Run a command and return its reply rows in order.

        timeout bounds the command from the moment it has the wire to
        itself, not the time spent queued behind other commands. Exceeding
        it raises asyncio.TimeoutError or a TIMEOUT ConnectivityError.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class DeviceConnector(ABC):
    """Factory for device connections (the wire-protocol collaborator)."""

    @abstractmethod
    async def connect(self, credentials: DeviceCredentials) -> DeviceConnection:
        """
        Open a connection.

        Raises ConnectivityError for timeout/refused/unreachable/auth.
        """
        pass


class RouterOSConnection(DeviceConnection):
    """
    librouteros-backed connection.

    librouteros is blocking and does not multiplex commands on one socket.
    The connection therefore keeps a small pool of logged-in channels: every
    command borrows an idle channel, opening another one (up to max_channels)
    when all are busy, and runs on it in the thread pool. A command's timeout
    starts once it holds a channel. A channel whose command timed out or
    dropped is discarded, so no later command can read its leftover reply.
    """

    def __init__(
        self,
        api: Any,
        address: str,
        executor: ThreadPoolExecutor,
        open_channel: Optional[Callable[[], Any]] = None,
        max_channels: int = 1,
    ):
        self._address = address
        self._executor = executor
        self._open_channel = open_channel
        self._idle: list[Any] = [api]
        self._live = 1
        self._slots = asyncio.Semaphore(max(1, max_channels))
        self._closed = False

    @property
    def channels(self) -> int:
        """Channels currently open, idle or busy."""
        return self._live

    async def execute(
        self,
        command: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> list[Row]:
        api = await self._acquire(command)
        words = {key: _to_word(value) for key, value in (params or {}).items()}
        call = self._executor.submit(self._execute_blocking, api, command, words)

        reusable = False
        try:
            if timeout:
                rows = await asyncio.wait_for(asyncio.wrap_future(call), timeout=timeout)
            else:
                rows = await asyncio.wrap_future(call)
            reusable = True
            return rows
        except ProtocolError as e:
            # a trap is read through to !done; anything else leaves the stream unknown
            reusable = isinstance(e.__cause__, (TrapError, MultiTrapError))
            raise
        except asyncio.TimeoutError as e:
            raise ConnectivityError(
                f"{command} timed out after {timeout}s",
                ConnectivityKind.TIMEOUT,
                self._address,
            ) from e
        finally:
            if reusable:
                self._release(api)
            else:
                self._discard(api, call)

    async def _acquire(self, command: str) -> Any:
        await self._slots.acquire()
        try:
            if self._closed:
                raise ConnectivityError("Session already closed", ConnectivityKind.CLOSED, self._address)
            if self._idle:
                return self._idle.pop()
            if self._open_channel is None:
                raise ConnectivityError(
                    f"No usable channel for {command}",
                    ConnectivityKind.CLOSED,
                    self._address,
                )
            return await self._open_extra()
        except BaseException:
            self._slots.release()
            raise

    async def _open_extra(self) -> Any:
        opening = self._executor.submit(self._open_channel)
        try:
            api = await asyncio.wrap_future(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(_close_opened)
            raise
        self._live += 1
        logger.debug(f"{self._address}: opened API channel {self._live}")
        return api

    def _release(self, api: Any) -> None:
        if self._closed:
            self._live -= 1
            _close_quietly(api)
        else:
            self._idle.append(api)
        self._slots.release()

    def _discard(self, api: Any, call: Future) -> None:
        self._live -= 1
        logger.debug(f"{self._address}: discarding API channel ({self._live} left)")
        # the worker may still be blocked on the socket; close once it returns
        call.add_done_callback(lambda _: _close_quietly(api))
        self._slots.release()

    def _execute_blocking(self, api: Any, command: str, words: dict[str, str]) -> list[Row]:
        try:
            return [dict(row) for row in api(command, **words)]
        except (TrapError, MultiTrapError) as e:
            raise ProtocolError(str(e), command=command) from e
        except (ConnectionClosed, FatalError) as e:
            raise ConnectivityError(str(e), ConnectivityKind.CLOSED, self._address) from e
        except LibRouterosError as e:
            raise ProtocolError(str(e), command=command) from e
        except OSError as e:
            raise ConnectivityError(str(e), classify_os_error(e), self._address) from e

    async def close(self) -> None:
        self._closed = True
        idle, self._idle = self._idle, []
        self._live -= len(idle)
        loop = asyncio.get_running_loop()
        for api in idle:
            await loop.run_in_executor(self._executor, _close_quietly, api)


class RouterOSConnector(DeviceConnector):
    """
    Connector for the RouterOS API (plain login, port 8728 by default).

    channels_per_device bounds how many API logins one session may hold at
    once; set it to the probe concurrency so parallel pings really overlap.
    """

    def __init__(self, max_workers: int = 32, channels_per_device: int = 1):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="routeros")
        self.channels_per_device = channels_per_device

    async def connect(self, credentials: DeviceCredentials) -> DeviceConnection:
        loop = asyncio.get_running_loop()
        api = await loop.run_in_executor(self._executor, self._connect_blocking, credentials)
        return RouterOSConnection(
            api,
            credentials.address,
            self._executor,
            open_channel=partial(self._connect_blocking, credentials),
            max_channels=self.channels_per_device,
        )

    def _connect_blocking(self, credentials: DeviceCredentials) -> Any:
        try:
            return librouteros.connect(
                host=credentials.address,
                username=credentials.username,
                password=credentials.secret,
                port=credentials.port,
                timeout=credentials.timeout,
            )
        except (TrapError, MultiTrapError) as e:
            kind = ConnectivityKind.AUTH if is_auth_failure(str(e)) else ConnectivityKind.REFUSED
            raise ConnectivityError(str(e), kind, credentials.address) from e
        except (ConnectionClosed, FatalError) as e:
            kind = ConnectivityKind.AUTH if is_auth_failure(str(e)) else ConnectivityKind.CLOSED
            raise ConnectivityError(str(e), kind, credentials.address) from e
        except OSError as e:
            raise ConnectivityError(str(e), classify_os_error(e), credentials.address) from e

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


def _to_word(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def _close_quietly(api: Any) -> None:
    try:
        api.close()
    except Exception as e:
        logger.debug(f"Ignoring channel close failure: {e}")


def _close_opened(opening: Future) -> None:
    """Close a channel whose login finished after its caller gave up."""
    if not opening.cancelled() and opening.exception() is None:
        _close_quietly(opening.result())


@dataclass
class DeviceSession:
    """An open session to one device."""
    address: str
    connection: DeviceConnection
    opened_at: datetime = field(default_factory=now_utc)
    commands_run: int = 0
    closed: bool = False


class DeviceSessionAdapter:
    """
    Opens, executes on and closes device sessions.

    All failures surface as ConnectivityError or ProtocolError; close() never
    raises.
    """

    def __init__(self, connector: DeviceConnector, command_timeout: Optional[float] = 30.0):
        self.connector = connector
        self.command_timeout = command_timeout

    async def open(self, credentials: DeviceCredentials) -> DeviceSession:
        """Open a session or raise ConnectivityError."""
        try:
            connection = await asyncio.wait_for(
                self.connector.connect(credentials),
                timeout=credentials.timeout,
            )
        except ConnectivityError:
            raise
        except asyncio.TimeoutError as e:
            raise ConnectivityError(
                f"Connect timed out after {credentials.timeout}s",
                ConnectivityKind.TIMEOUT,
                credentials.address,
            ) from e
        except OSError as e:
            raise ConnectivityError(str(e), classify_os_error(e), credentials.address) from e

        logger.debug(f"Session opened to {credentials.address}:{credentials.port}")
        return DeviceSession(address=credentials.address, connection=connection)

    async def execute(
        self,
        session: DeviceSession,
        command: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> list[Row]:
        """
        Execute a command and return its rows in remote order.

        Rows may carry different keys; callers must not assume a schema.
        """
        if session.closed:
            raise ConnectivityError("Session already closed", ConnectivityKind.CLOSED, session.address)

        limit = timeout if timeout is not None else self.command_timeout
        try:
            rows = await session.connection.execute(command, params, timeout=limit or None)
        except (ConnectivityError, ProtocolError):
            raise
        except asyncio.TimeoutError as e:
            raise ConnectivityError(
                f"{command} timed out after {limit}s",
                ConnectivityKind.TIMEOUT,
                session.address,
            ) from e
        except OSError as e:
            raise ConnectivityError(str(e), classify_os_error(e), session.address) from e

        session.commands_run += 1
        if rows is None:
            raise ProtocolError("Empty reply", command=command)
        if not isinstance(rows, list):
            rows = list(rows)
        for row in rows:
            if not isinstance(row, dict):
                raise ProtocolError(f"Malformed reply row: {row!r}", command=command)
        return rows

    async def close(self, session: Optional[DeviceSession]) -> None:
        """Close a session. Idempotent; failures are logged and swallowed."""
        if session is None or session.closed:
            return
        session.closed = True
        try:
            await session.connection.close()
        except Exception as e:
            logger.debug(f"Ignoring close failure for {session.address}: {e}")

    @asynccontextmanager
    async def session(self, credentials: DeviceCredentials) -> AsyncIterator[DeviceSession]:
        """Open a session and always close it."""
        opened = await self.open(credentials)
        try:
            yield opened
        finally:
            await self.close(opened)
