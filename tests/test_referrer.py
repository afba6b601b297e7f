"""Tests for the install-referrer payload model and single-flight fetcher."""

from __future__ import annotations

import asyncio

import pytest

from deferred_link.referrer import (
    DeadObjectError,
    InstallReferrerResponse,
    InstallReferrerService,
    ReferrerError,
    ReferrerErrorCode,
    ReferrerInfo,
    ServiceDisconnected,
)

PAYLOAD = {
    "installReferrer": "utm_source=foo&utm_medium=bar&utm_campaign=spring+sale",
    "referrerClickTimestampSeconds": 1700000000,
    "installBeginTimestampSeconds": 1700000100,
    "referrerClickTimestampServerSeconds": 1700000001,
    "installBeginTimestampServerSeconds": 1700000101,
    "installVersion": "1.2.3",
    "googlePlayInstantParam": True,
}


class _FakeConnection:
    def __init__(
        self,
        *,
        response: int = InstallReferrerResponse.OK,
        payload: object = None,
        start_exc: Exception | None = None,
        fetch_exc: Exception | None = None,
        gate: asyncio.Event | None = None,
    ):
        self.response = response
        self.payload = PAYLOAD if payload is None else payload
        self.start_exc = start_exc
        self.fetch_exc = fetch_exc
        self.gate = gate
        self.closed = False

    async def start(self) -> int:
        if self.gate is not None:
            await self.gate.wait()
        if self.start_exc is not None:
            raise self.start_exc
        return self.response

    async def fetch_details(self):
        if self.fetch_exc is not None:
            raise self.fetch_exc
        return self.payload

    async def close(self) -> None:
        self.closed = True


class _Factory:
    def __init__(self, *connections: _FakeConnection):
        self._connections = list(connections)
        self.created: list[_FakeConnection] = []

    def __call__(self) -> _FakeConnection:
        if not self._connections:
            raise RuntimeError("No connections configured")
        connection = self._connections.pop(0)
        self.created.append(connection)
        return connection


class TestReferrerInfo:
    def test_from_map_reads_all_fields(self):
        info = ReferrerInfo.from_map(PAYLOAD)
        assert info.install_referrer == PAYLOAD["installReferrer"]
        assert info.referrer_click_timestamp_seconds == 1700000000
        assert info.install_begin_timestamp_seconds == 1700000100
        assert info.referrer_click_timestamp_server_seconds == 1700000001
        assert info.install_begin_timestamp_server_seconds == 1700000101
        assert info.install_version == "1.2.3"
        assert info.google_play_instant_param is True

    def test_from_map_defaults_missing_fields(self):
        info = ReferrerInfo.from_map({})
        assert info == ReferrerInfo()
        assert info.install_referrer is None
        assert info.referrer_click_timestamp_seconds == 0
        assert info.google_play_instant_param is False

    def test_from_map_tolerates_wrong_types(self):
        info = ReferrerInfo.from_map(
            {
                "installReferrer": 5,
                "referrerClickTimestampSeconds": "12",
                "installBeginTimestampSeconds": 12.9,
                "installBeginTimestampServerSeconds": True,
                "googlePlayInstantParam": "yes",
            }
        )
        assert info.install_referrer is None
        assert info.referrer_click_timestamp_seconds == 0
        assert info.install_begin_timestamp_seconds == 12
        assert info.install_begin_timestamp_server_seconds == 0
        assert info.google_play_instant_param is False

    def test_as_query_parameters(self):
        params = ReferrerInfo.from_map(PAYLOAD).as_query_parameters
        assert params == {"utm_source": "foo", "utm_medium": "bar", "utm_campaign": "spring sale"}

    @pytest.mark.parametrize("referrer", [None, ""])
    def test_as_query_parameters_empty(self, referrer):
        assert ReferrerInfo(install_referrer=referrer).as_query_parameters == {}


@pytest.mark.asyncio
async def test_fetches_and_closes_connection():
    factory = _Factory(_FakeConnection())
    service = InstallReferrerService(factory)

    info = await service.get_install_referrer()

    assert info.install_version == "1.2.3"
    assert info.as_query_parameters["utm_source"] == "foo"
    assert service.is_resolved
    assert len(factory.created) == 1
    assert factory.created[0].closed


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_fetch():
    gate = asyncio.Event()
    factory = _Factory(_FakeConnection(gate=gate))
    service = InstallReferrerService(factory)

    tasks = [asyncio.ensure_future(service.get_install_referrer()) for _ in range(5)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert service.pending_waiters == 5
    gate.set()
    results = await asyncio.gather(*tasks)

    assert len(factory.created) == 1
    assert all(r is results[0] for r in results)
    assert service.pending_waiters == 0


@pytest.mark.asyncio
async def test_success_is_cached_for_later_callers():
    factory = _Factory(_FakeConnection())
    service = InstallReferrerService(factory)

    first = await service.get_install_referrer()
    second = await service.get_install_referrer()

    assert first is second
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_error_is_cached_for_later_callers():
    factory = _Factory(_FakeConnection(response=InstallReferrerResponse.SERVICE_UNAVAILABLE))
    service = InstallReferrerService(factory)

    with pytest.raises(ReferrerError) as first:
        await service.get_install_referrer()
    with pytest.raises(ReferrerError) as second:
        await service.get_install_referrer()

    assert first.value.code == ReferrerErrorCode.SERVICE_UNAVAILABLE
    assert second.value.code == ReferrerErrorCode.SERVICE_UNAVAILABLE
    assert len(factory.created) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "code"),
    [
        (InstallReferrerResponse.SERVICE_UNAVAILABLE, ReferrerErrorCode.SERVICE_UNAVAILABLE),
        (InstallReferrerResponse.FEATURE_NOT_SUPPORTED, ReferrerErrorCode.FEATURE_NOT_SUPPORTED),
        (InstallReferrerResponse.DEVELOPER_ERROR, ReferrerErrorCode.DEVELOPER_ERROR),
        (InstallReferrerResponse.PERMISSION_ERROR, ReferrerErrorCode.PERMISSION_ERROR),
        (99, ReferrerErrorCode.UNKNOWN_RESPONSE),
    ],
)
async def test_setup_response_codes_map_to_errors(response, code):
    service = InstallReferrerService(_Factory(_FakeConnection(response=response)))

    with pytest.raises(ReferrerError) as exc_info:
        await service.get_install_referrer()

    assert exc_info.value.code == code
    assert str(exc_info.value).startswith(code.value)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "first",
    [
        _FakeConnection(start_exc=ServiceDisconnected()),
        _FakeConnection(response=InstallReferrerResponse.SERVICE_DISCONNECTED),
    ],
)
async def test_disconnect_is_retried_once(first):
    factory = _Factory(first, _FakeConnection())
    service = InstallReferrerService(factory)

    info = await service.get_install_referrer()

    assert info.install_version == "1.2.3"
    assert len(factory.created) == 2
    assert all(c.closed for c in factory.created)


@pytest.mark.asyncio
async def test_second_disconnect_gives_retry_error():
    factory = _Factory(
        _FakeConnection(start_exc=ServiceDisconnected()),
        _FakeConnection(start_exc=ServiceDisconnected()),
        _FakeConnection(),
    )
    service = InstallReferrerService(factory)

    with pytest.raises(ReferrerError) as exc_info:
        await service.get_install_referrer()

    assert exc_info.value.code == ReferrerErrorCode.SERVICE_DISCONNECTED_RETRY
    assert len(factory.created) == 2


@pytest.mark.asyncio
async def test_start_failure_codes_depend_on_attempt():
    service = InstallReferrerService(_Factory(_FakeConnection(start_exc=RuntimeError("boom"))))
    with pytest.raises(ReferrerError) as exc_info:
        await service.get_install_referrer()
    assert exc_info.value.code == ReferrerErrorCode.CONNECTION_FAILED

    service = InstallReferrerService(
        _Factory(
            _FakeConnection(start_exc=ServiceDisconnected()),
            _FakeConnection(start_exc=RuntimeError("boom")),
        )
    )
    with pytest.raises(ReferrerError) as exc_info:
        await service.get_install_referrer()
    assert exc_info.value.code == ReferrerErrorCode.RETRY_FAILED


@pytest.mark.asyncio
async def test_factory_failure_is_a_connection_failure():
    service = InstallReferrerService(_Factory())

    with pytest.raises(ReferrerError) as exc_info:
        await service.get_install_referrer()

    assert exc_info.value.code == ReferrerErrorCode.CONNECTION_FAILED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("connection", "code"),
    [
        (_FakeConnection(start_exc=DeadObjectError()), ReferrerErrorCode.DEAD_OBJECT_EXCEPTION),
        (_FakeConnection(fetch_exc=DeadObjectError()), ReferrerErrorCode.DEAD_OBJECT_EXCEPTION),
        (_FakeConnection(fetch_exc=ServiceDisconnected()), ReferrerErrorCode.SERVICE_DISCONNECTED),
        (_FakeConnection(fetch_exc=ValueError("bad")), ReferrerErrorCode.UNEXPECTED_ERROR),
        (_FakeConnection(payload=["not", "a", "map"]), ReferrerErrorCode.NO_RESULT),
    ],
)
async def test_fetch_failures_map_to_codes(connection, code):
    service = InstallReferrerService(_Factory(connection))

    with pytest.raises(ReferrerError) as exc_info:
        await service.get_install_referrer()

    assert exc_info.value.code == code
    assert connection.closed


@pytest.mark.asyncio
async def test_waiter_limit_rejects_excess_callers_without_caching():
    gate = asyncio.Event()
    factory = _Factory(_FakeConnection(gate=gate))
    service = InstallReferrerService(factory, max_waiters=2)

    tasks = [asyncio.ensure_future(service.get_install_referrer()) for _ in range(2)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    with pytest.raises(ReferrerError) as exc_info:
        await service.get_install_referrer()
    assert exc_info.value.code == ReferrerErrorCode.TOO_MANY_WAITERS

    gate.set()
    results = await asyncio.gather(*tasks)
    assert results[0] is results[1]

    assert await service.get_install_referrer() is results[0]
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_reset_allows_a_fresh_fetch():
    factory = _Factory(
        _FakeConnection(response=InstallReferrerResponse.FEATURE_NOT_SUPPORTED),
        _FakeConnection(),
    )
    service = InstallReferrerService(factory)

    with pytest.raises(ReferrerError):
        await service.get_install_referrer()

    service.reset()
    assert not service.is_resolved
    info = await service.get_install_referrer()
    assert info.install_version == "1.2.3"
    assert len(factory.created) == 2


@pytest.mark.asyncio
async def test_dead_connection_on_retry_start_is_a_retry_failure():
    factory = _Factory(
        _FakeConnection(start_exc=ServiceDisconnected()),
        _FakeConnection(start_exc=DeadObjectError()),
    )
    service = InstallReferrerService(factory)

    with pytest.raises(ReferrerError) as exc_info:
        await service.get_install_referrer()

    assert exc_info.value.code == ReferrerErrorCode.RETRY_FAILED
    assert all(c.closed for c in factory.created)


class _Abort(BaseException):
    pass


@pytest.mark.asyncio
async def test_non_referrer_failure_does_not_pin_the_fetch():
    factory = _Factory(_FakeConnection(start_exc=_Abort()), _FakeConnection())
    service = InstallReferrerService(factory)

    with pytest.raises(_Abort):
        await service.get_install_referrer()
    assert not service.is_resolved

    info = await service.get_install_referrer()
    assert info.install_version == "1.2.3"
    assert len(factory.created) == 2


@pytest.mark.asyncio
async def test_reset_during_fetch_starts_a_new_one():
    stale_gate = asyncio.Event()
    stale_payload = dict(PAYLOAD, installVersion="0.9.0")
    factory = _Factory(
        _FakeConnection(payload=stale_payload, gate=stale_gate),
        _FakeConnection(),
    )
    service = InstallReferrerService(factory)

    stale = asyncio.ensure_future(service.get_install_referrer())
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    service.reset()
    fresh = await service.get_install_referrer()
    assert fresh.install_version == "1.2.3"

    stale_gate.set()
    assert (await stale).install_version == "0.9.0"
    assert (await service.get_install_referrer()) is fresh
    assert len(factory.created) == 2
