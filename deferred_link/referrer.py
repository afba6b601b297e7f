"""Install-referrer payload model and single-flight store fetcher."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, Mapping, Optional, Protocol
from urllib.parse import parse_qsl

from .exceptions import DeferredLinkError

logger = logging.getLogger(__name__)

DEFAULT_MAX_WAITERS = 64


class InstallReferrerResponse(IntEnum):
    """Setup response codes reported by the store's referrer service."""

    SERVICE_DISCONNECTED = -1
    OK = 0
    SERVICE_UNAVAILABLE = 1
    FEATURE_NOT_SUPPORTED = 2
    DEVELOPER_ERROR = 3
    PERMISSION_ERROR = 4


class ReferrerErrorCode(str, Enum):
    """Stable error codes surfaced to application code."""

    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    FEATURE_NOT_SUPPORTED = "FEATURE_NOT_SUPPORTED"
    DEVELOPER_ERROR = "DEVELOPER_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    SERVICE_DISCONNECTED = "SERVICE_DISCONNECTED"  # Lost while reading details
    SERVICE_DISCONNECTED_RETRY = "SERVICE_DISCONNECTED_RETRY"  # Lost again after the one retry
    DEAD_OBJECT_EXCEPTION = "DEAD_OBJECT_EXCEPTION"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    RETRY_FAILED = "RETRY_FAILED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
    UNKNOWN_RESPONSE = "UNKNOWN_RESPONSE"
    NO_RESULT = "NO_RESULT"
    TOO_MANY_WAITERS = "TOO_MANY_WAITERS"  # Not cached


class ReferrerError(DeferredLinkError):
    """Install-referrer failure carrying a stable code."""

    def __init__(self, code: ReferrerErrorCode, message: str):
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message


class ServiceDisconnected(Exception):
    """Raised by a connection when the store service drops the binding."""


class DeadObjectError(Exception):
    """Raised by a connection when the remote service process died mid-call."""


class ReferrerConnection(Protocol):
    """One binding to the store's install-referrer service."""

    async def start(self) -> int:
        """Bind to the service and return its setup response code."""
        ...

    async def fetch_details(self) -> Mapping[str, Any]:
        """Read the referrer payload (camelCase keys) after an OK setup."""
        ...

    async def close(self) -> None:
        ...


ConnectionFactory = Callable[[], ReferrerConnection]


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _as_optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


@dataclass(frozen=True)
class ReferrerInfo:
    """
    Structured view of the store install-referrer payload.

    All timestamps are in seconds, as reported by the store.
    """

    install_referrer: Optional[str] = None
    referrer_click_timestamp_seconds: int = 0
    install_begin_timestamp_seconds: int = 0
    referrer_click_timestamp_server_seconds: int = 0
    install_begin_timestamp_server_seconds: int = 0
    install_version: Optional[str] = None
    google_play_instant_param: bool = False

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> "ReferrerInfo":
        """Build from a platform mapping, defaulting missing or mistyped fields."""
        instant = data.get("googlePlayInstantParam")
        return cls(
            install_referrer=_as_optional_str(data.get("installReferrer")),
            referrer_click_timestamp_seconds=_as_int(data.get("referrerClickTimestampSeconds")),
            install_begin_timestamp_seconds=_as_int(data.get("installBeginTimestampSeconds")),
            referrer_click_timestamp_server_seconds=_as_int(
                data.get("referrerClickTimestampServerSeconds")
            ),
            install_begin_timestamp_server_seconds=_as_int(
                data.get("installBeginTimestampServerSeconds")
            ),
            install_version=_as_optional_str(data.get("installVersion")),
            google_play_instant_param=instant if isinstance(instant, bool) else False,
        )

    @property
    def as_query_parameters(self) -> dict[str, str]:
        """
        Decode the referrer string as a query segment.

        "utm_source=foo&utm_medium=bar" -> {"utm_source": "foo", "utm_medium": "bar"}
        """
        if not self.install_referrer:
            return {}
        return dict(parse_qsl(self.install_referrer, keep_blank_values=True))


_SETUP_ERRORS: dict[int, tuple[ReferrerErrorCode, str]] = {
    InstallReferrerResponse.SERVICE_UNAVAILABLE: (
        ReferrerErrorCode.SERVICE_UNAVAILABLE,
        "Install Referrer service is currently unavailable.",
    ),
    InstallReferrerResponse.FEATURE_NOT_SUPPORTED: (
        ReferrerErrorCode.FEATURE_NOT_SUPPORTED,
        "Install Referrer API is not supported on this device.",
    ),
    InstallReferrerResponse.DEVELOPER_ERROR: (
        ReferrerErrorCode.DEVELOPER_ERROR,
        "Developer error while using Install Referrer API.",
    ),
    InstallReferrerResponse.PERMISSION_ERROR: (
        ReferrerErrorCode.PERMISSION_ERROR,
        "App is not allowed to use Install Referrer service.",
    ),
}


class InstallReferrerService:
    """
    Fetches the install referrer once and serves every caller from that outcome.

    Concurrent callers share a single in-flight fetch. The first outcome,
    success or error, is kept for the lifetime of this object. A disconnect
    while binding is retried exactly once on a fresh connection.

    Usage:
        service = InstallReferrerService(lambda: PlayReferrerConnection(context))
        info = await service.get_install_referrer()
        campaign = info.as_query_parameters.get("utm_campaign")
    """

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        *,
        max_waiters: int = DEFAULT_MAX_WAITERS,
    ):
        self._connection_factory = connection_factory
        self.max_waiters = max_waiters

        self._lock = asyncio.Lock()
        self._result: Optional[ReferrerInfo] = None
        self._error: Optional[ReferrerError] = None
        self._inflight: Optional[asyncio.Future] = None
        self._waiters = 0

    @property
    def is_resolved(self) -> bool:
        return self._result is not None or self._error is not None

    @property
    def pending_waiters(self) -> int:
        return self._waiters

    async def get_install_referrer(self) -> ReferrerInfo:
        async with self._lock:
            if self._result is not None:
                return self._result
            if self._error is not None:
                raise self._error

            if self._waiters >= self.max_waiters:
                raise ReferrerError(
                    ReferrerErrorCode.TOO_MANY_WAITERS,
                    f"More than {self.max_waiters} callers waiting for the install referrer.",
                )

            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._fetch())
            inflight = self._inflight
            self._waiters += 1

        try:
            return await asyncio.shield(inflight)
        finally:
            self._waiters -= 1

    def reset(self) -> None:
        """Forget the cached outcome and any in-flight fetch. Intended for tests."""
        self._result = None
        self._error = None
        self._inflight = None

    async def _fetch(self) -> ReferrerInfo:
        info: Optional[ReferrerInfo] = None
        error: Optional[ReferrerError] = None
        try:
            info = await self._connect_with_retry()
        except ReferrerError as exc:
            logger.warning("Install referrer unavailable: %s", exc)
            error = exc
            raise
        finally:
            # A reset() while this fetch ran hands the slot to a newer fetch.
            async with self._lock:
                if self._inflight is asyncio.current_task():
                    self._inflight = None
                    self._result = info
                    self._error = error
        return info

    async def _connect_with_retry(self) -> ReferrerInfo:
        for retry in (False, True):
            connection = self._open(retry)
            try:
                response = await self._start(connection, retry)
                if response != InstallReferrerResponse.SERVICE_DISCONNECTED:
                    return await self._read_details(connection, response)
            finally:
                await self._close(connection)

            if retry:
                break
            logger.warning("Install Referrer service disconnected, retrying once")

        raise ReferrerError(
            ReferrerErrorCode.SERVICE_DISCONNECTED_RETRY,
            "Install Referrer service disconnected after retry.",
        )

    def _open(self, retry: bool) -> ReferrerConnection:
        try:
            return self._connection_factory()
        except Exception as exc:
            logger.error("Failed to create Install Referrer connection: %s", exc)
            raise self._start_failure(retry) from exc

    async def _start(self, connection: ReferrerConnection, retry: bool) -> int:
        try:
            return await connection.start()
        except ServiceDisconnected:
            return InstallReferrerResponse.SERVICE_DISCONNECTED
        except DeadObjectError as exc:
            logger.error("Install Referrer connection died while starting: %s", exc)
            if retry:
                raise self._start_failure(retry) from exc
            raise ReferrerError(
                ReferrerErrorCode.DEAD_OBJECT_EXCEPTION,
                "Install Referrer service connection died unexpectedly.",
            ) from exc
        except Exception as exc:
            logger.exception("Unexpected error while starting Install Referrer connection")
            raise self._start_failure(retry) from exc

    @staticmethod
    def _start_failure(retry: bool) -> ReferrerError:
        if retry:
            return ReferrerError(
                ReferrerErrorCode.RETRY_FAILED,
                "Failed to reconnect to Install Referrer service.",
            )
        return ReferrerError(
            ReferrerErrorCode.CONNECTION_FAILED,
            "Failed to start Install Referrer connection.",
        )

    async def _read_details(self, connection: ReferrerConnection, response: int) -> ReferrerInfo:
        if response != InstallReferrerResponse.OK:
            code, message = _SETUP_ERRORS.get(
                response,
                (
                    ReferrerErrorCode.UNKNOWN_RESPONSE,
                    f"Install Referrer API returned unknown response code: {response}",
                ),
            )
            raise ReferrerError(code, message)

        try:
            payload = await connection.fetch_details()
        except DeadObjectError as exc:
            logger.error("Install Referrer service died while fetching details: %s", exc)
            raise ReferrerError(
                ReferrerErrorCode.DEAD_OBJECT_EXCEPTION,
                "Install Referrer service died while retrieving data.",
            ) from exc
        except ServiceDisconnected as exc:
            raise ReferrerError(
                ReferrerErrorCode.SERVICE_DISCONNECTED,
                "Install Referrer service disconnected.",
            ) from exc
        except Exception as exc:
            logger.exception("Unexpected error while fetching install referrer")
            raise ReferrerError(
                ReferrerErrorCode.UNEXPECTED_ERROR,
                "Unexpected error while retrieving referrer details.",
            ) from exc

        if not isinstance(payload, Mapping):
            raise ReferrerError(
                ReferrerErrorCode.NO_RESULT,
                f"Unexpected referrer payload type: {type(payload).__name__}",
            )
        return ReferrerInfo.from_map(payload)

    @staticmethod
    async def _close(connection: ReferrerConnection) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.debug(f"Failed to close Install Referrer connection: {e}")
