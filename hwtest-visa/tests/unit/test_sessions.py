"""Tests for device sessions, the event registry and the session manager."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from hwtest_visa.config import OpenOptions, SessionConfig, SessionManagerConfig
from hwtest_visa.errors import DeviceNotFoundError, ProtocolError, SessionError, VisaTimeoutError
from hwtest_visa.manager import ResourceManager
from hwtest_visa.resource import MessageBasedResource
from hwtest_visa.sessions import DeviceSession, EventRegistry, SessionEvent, SessionManager, SessionState
from hwtest_visa.transports import ScriptedDevice

PSU = "SIM::PSU::INSTR"
FAST = OpenOptions(timeout=0.05)


async def query_idn(resource: MessageBasedResource) -> str:
    return await resource.query("*IDN?")


async def fail_protocol(resource: MessageBasedResource) -> None:
    raise ProtocolError("garbled reply")


async def sleep_forever(resource: MessageBasedResource) -> None:
    await asyncio.sleep(10)


class Opener:
    """Counting opener backed by a resource manager."""

    def __init__(self, manager: ResourceManager, *, delay: float = 0.0) -> None:
        self.manager = manager
        self.delay = delay
        self.calls = 0
        self.error: Exception | None = None

    async def __call__(self, resource_string: str) -> MessageBasedResource:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return await self.manager.open_resource(resource_string, FAST)


@pytest.fixture
def opener(sim_manager: ResourceManager) -> Opener:
    """Opener for SIM::PSU::INSTR."""
    return Opener(sim_manager)


async def make_session(opener: Opener, **config: Any) -> DeviceSession:
    resource = await opener.manager.open_resource(PSU, FAST)
    return DeviceSession(PSU, resource, opener=opener, config=SessionConfig(**config))


# ---------------------------------------------------------------------------
# EventRegistry
# ---------------------------------------------------------------------------


class TestEventRegistry:
    """Tests for EventRegistry."""

    def test_handlers_called_in_order(self) -> None:
        registry = EventRegistry()
        calls: list[tuple[str, int]] = []
        registry.on("x", lambda value: calls.append(("first", value)))
        registry.on("x", lambda value: calls.append(("second", value)))
        registry.emit("x", 7)
        assert calls == [("first", 7), ("second", 7)]

    def test_failing_handler_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        registry = EventRegistry()
        calls: list[int] = []

        def broken(value: int) -> None:
            raise RuntimeError("handler bug")

        registry.on("x", broken)
        registry.on("x", calls.append)
        with caplog.at_level(logging.ERROR, logger="hwtest_visa.sessions.events"):
            registry.emit("x", 1)
        assert calls == [1]
        assert "handler bug" in caplog.text

    def test_off(self) -> None:
        registry = EventRegistry()
        calls: list[int] = []
        registry.on("x", calls.append)
        registry.off("x", calls.append)
        registry.off("x", print)
        registry.off("missing", print)
        registry.emit("x", 1)
        assert calls == []
        assert registry.handlers("x") == ()

    def test_clear(self) -> None:
        registry = EventRegistry()
        registry.on("x", print)
        registry.clear()
        assert registry.handlers("x") == ()


# ---------------------------------------------------------------------------
# DeviceSession
# ---------------------------------------------------------------------------


class TestDeviceSessionExecute:
    """Tests for DeviceSession.execute."""

    @pytest.mark.asyncio
    async def test_success(self, opener: Opener) -> None:
        session = await make_session(opener)
        assert session.state is SessionState.CONNECTED
        assert await session.execute(query_idn) == "ACME,PSU-100,SN42,1.2.3"
        assert session.error_count == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_work_runs_in_submission_order(self, opener: Opener) -> None:
        session = await make_session(opener)
        order: list[str] = []

        def job(n: int) -> Any:
            async def fn(resource: MessageBasedResource) -> int:
                order.append(f"start {n}")
                await asyncio.sleep(0.01)
                order.append(f"end {n}")
                return n

            return fn

        results = await asyncio.gather(*(session.execute(job(n)) for n in range(3)))
        assert results == [0, 1, 2]
        assert order == ["start 0", "end 0", "start 1", "end 1", "start 2", "end 2"]
        await session.close()

    @pytest.mark.asyncio
    async def test_consecutive_failures_enter_error(self, opener: Opener) -> None:
        session = await make_session(opener, max_consecutive_errors=3)
        for _ in range(3):
            with pytest.raises(ProtocolError):
                await session.execute(fail_protocol)
        assert session.state is SessionState.ERROR
        assert session.error_count == 3
        assert isinstance(session.last_error, ProtocolError)
        await session.close()

    @pytest.mark.asyncio
    async def test_success_resets_error_count(self, opener: Opener) -> None:
        session = await make_session(opener, max_consecutive_errors=2)
        for _ in range(2):
            with pytest.raises(ProtocolError):
                await session.execute(fail_protocol)
        assert session.state is SessionState.ERROR
        await session.execute(query_idn)
        assert session.state is SessionState.CONNECTED
        assert session.error_count == 0
        assert session.last_error is None
        await session.close()

    @pytest.mark.asyncio
    async def test_builtin_timeout_from_work_is_wrapped(self, opener: Opener) -> None:
        session = await make_session(opener)

        async def times_out(resource: MessageBasedResource) -> None:
            raise TimeoutError("meter busy")

        with pytest.raises(VisaTimeoutError, match="meter busy"):
            await session.execute(times_out)
        assert session.error_count == 1
        assert session.state is SessionState.CONNECTED
        await session.close()

    @pytest.mark.asyncio
    async def test_execute_timeout_disconnects(self, opener: Opener) -> None:
        session = await make_session(opener)
        resource = session.resource
        with pytest.raises(VisaTimeoutError, match="timed out"):
            await session.execute(sleep_forever, timeout=0.05)
        assert session.state is SessionState.DISCONNECTED
        assert session.resource is None
        assert resource is not None and not resource.is_open
        assert session.error_count == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_auto_reconnect_on_next_execute(self, opener: Opener) -> None:
        session = await make_session(opener)
        await session.disconnect()
        assert session.state is SessionState.DISCONNECTED
        assert await session.execute(query_idn) == "ACME,PSU-100,SN42,1.2.3"
        assert session.state is SessionState.CONNECTED
        assert opener.calls == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_no_auto_reconnect(self, opener: Opener) -> None:
        session = await make_session(opener, auto_reconnect=False)
        await session.disconnect()
        with pytest.raises(SessionError, match="disconnected"):
            await session.execute(query_idn)
        assert opener.calls == 0
        await session.reconnect()
        assert await session.execute(query_idn) == "ACME,PSU-100,SN42,1.2.3"
        await session.close()

    @pytest.mark.asyncio
    async def test_closed_session_rejects_work(self, opener: Opener) -> None:
        session = await make_session(opener)
        await session.close()
        assert session.is_closed
        assert session.resource is None
        with pytest.raises(SessionError, match="closed"):
            await session.execute(query_idn)
        with pytest.raises(SessionError):
            await session.reconnect()
        await session.close()


class TestDeviceSessionReconnect:
    """Tests for DeviceSession.reconnect."""

    @pytest.mark.asyncio
    async def test_manual_reconnect_resets_errors(self, opener: Opener) -> None:
        session = await make_session(opener, max_consecutive_errors=1)
        old = session.resource
        with pytest.raises(ProtocolError):
            await session.execute(fail_protocol)
        assert session.state is SessionState.ERROR
        new = await session.reconnect()
        assert new is session.resource and new is not old
        assert session.state is SessionState.CONNECTED
        assert session.error_count == 0
        assert old is not None and not old.is_open
        await session.close()

    @pytest.mark.asyncio
    async def test_concurrent_reconnects_share_one_attempt(self, sim_manager: ResourceManager) -> None:
        opener = Opener(sim_manager, delay=0.02)
        session = await make_session(opener)
        first, second = await asyncio.gather(session.reconnect(), session.reconnect())
        assert first is second
        assert opener.calls == 1
        assert not session.is_reconnecting
        await session.close()

    @pytest.mark.asyncio
    async def test_work_waits_for_reconnect_in_flight(self, sim_manager: ResourceManager) -> None:
        opener = Opener(sim_manager, delay=0.02)
        session = await make_session(opener)
        reconnect = asyncio.create_task(session.reconnect())
        await asyncio.sleep(0)
        assert session.is_reconnecting
        assert await session.execute(query_idn) == "ACME,PSU-100,SN42,1.2.3"
        await reconnect
        assert opener.calls == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_reconnect_waits_for_running_work(self, opener: Opener) -> None:
        session = await make_session(opener)
        old = session.resource

        async def slow_idn(resource: MessageBasedResource) -> str:
            await asyncio.sleep(0.05)
            return await resource.query("*IDN?")

        work = asyncio.create_task(session.execute(slow_idn))
        await asyncio.sleep(0.01)
        assert session.is_busy
        new = await session.reconnect()
        assert work.done()
        assert await work == "ACME,PSU-100,SN42,1.2.3"
        assert new is session.resource and new is not old
        assert opener.calls == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_failed_reconnect_enters_error(self, opener: Opener) -> None:
        session = await make_session(opener)
        opener.error = DeviceNotFoundError("unplugged")
        with pytest.raises(DeviceNotFoundError):
            await session.reconnect()
        assert session.state is SessionState.ERROR
        assert session.resource is None
        assert isinstance(session.last_error, DeviceNotFoundError)
        assert not session.is_reconnecting
        await session.close()

    @pytest.mark.asyncio
    async def test_state_change_notifications(self, opener: Opener) -> None:
        session = await make_session(opener)
        states: list[SessionState] = []
        unsubscribe = session.on_state_change(states.append)
        await session.disconnect()
        await session.reconnect()
        assert states == [SessionState.DISCONNECTED, SessionState.CONNECTING, SessionState.CONNECTED]
        unsubscribe()
        await session.disconnect()
        assert len(states) == 3
        await session.close()


class TestDeviceSessionPolling:
    """Tests for the session poll loop."""

    @pytest.mark.asyncio
    async def test_poll_publishes_status(self, opener: Opener) -> None:
        resource = await opener.manager.open_resource(PSU, FAST)

        async def read_volts(res: MessageBasedResource) -> str:
            return await res.query("VOLT?")

        session = DeviceSession(
            PSU, resource, opener=opener, config=SessionConfig(poll_interval=0.01), poll_fn=read_volts
        )
        received = asyncio.Event()
        statuses: list[Any] = []

        def on_status(value: Any) -> None:
            statuses.append(value)
            received.set()

        session.on_status(on_status)
        session.start_polling()
        await asyncio.wait_for(received.wait(), 1.0)
        assert statuses[0] == "0.000"
        assert session.status == "0.000"
        await session.close()

    @pytest.mark.asyncio
    async def test_set_status_without_polling(self, opener: Opener) -> None:
        session = await make_session(opener)
        values: list[Any] = []
        unsubscribe = session.on_status(values.append)
        session.set_status({"volts": 5.0})
        unsubscribe()
        session.set_status({"volts": 6.0})
        assert values == [{"volts": 5.0}]
        assert session.status == {"volts": 6.0}
        await session.close()


# ---------------------------------------------------------------------------
# SessionManager
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_manager(sim_manager: ResourceManager) -> AsyncIterator[SessionManager]:
    """Session manager over the simulated PSU, scanning only on demand."""
    manager = SessionManager(sim_manager, SessionManagerConfig(scan_interval=60.0), options_for=lambda _r: FAST)
    yield manager
    await manager.stop()


class TestSessionManager:
    """Tests for SessionManager."""

    @pytest.mark.asyncio
    async def test_start_adds_sessions(self, session_manager: SessionManager) -> None:
        added: list[DeviceSession] = []
        session_manager.on(SessionEvent.SESSION_ADDED, added.append)
        await session_manager.start()
        assert session_manager.is_running
        assert [s.resource_string for s in added] == [PSU]
        assert added[0].state is SessionState.CONNECTED
        assert session_manager.get_session(PSU) is added[0]

    @pytest.mark.asyncio
    async def test_stop_removes_sessions(self, session_manager: SessionManager) -> None:
        removed: list[str] = []
        session_manager.on("session-removed", removed.append)
        await session_manager.start()
        session = session_manager.get_session(PSU)
        await session_manager.stop()
        assert removed == [PSU]
        assert session is not None and session.is_closed
        assert session_manager.sessions == {}
        assert not session_manager.is_running

    @pytest.mark.asyncio
    async def test_execute(self, session_manager: SessionManager) -> None:
        await session_manager.start()
        assert await session_manager.execute(PSU, query_idn) == "ACME,PSU-100,SN42,1.2.3"
        with pytest.raises(SessionError):
            await session_manager.execute("SIM::NOPE::INSTR", query_idn)

    @pytest.mark.asyncio
    async def test_filter(self, sim_manager: ResourceManager) -> None:
        sim_manager.register_simulated_device("dmm", ScriptedDevice())
        config = SessionManagerConfig(scan_interval=60.0, resource_filter="SIM::DMM::*")
        async with SessionManager(sim_manager, config, options_for=lambda _r: FAST) as manager:
            assert list(manager.sessions) == ["SIM::DMM::INSTR"]

    @pytest.mark.asyncio
    async def test_scan_removes_vanished_resource(
        self, sim_manager: ResourceManager, session_manager: SessionManager
    ) -> None:
        removed: list[str] = []
        session_manager.on(SessionEvent.SESSION_REMOVED, removed.append)
        await session_manager.start()
        session = session_manager.get_session(PSU)
        sim_manager.unregister_simulated_device("psu")
        await session_manager.scan()
        assert removed == [PSU]
        assert session is not None and session.is_closed
        assert not sim_manager.is_open(PSU)

    @pytest.mark.asyncio
    async def test_scan_reconnects_disconnected_session(self, session_manager: SessionManager) -> None:
        changes: list[tuple[DeviceSession, SessionState]] = []
        session_manager.on(SessionEvent.SESSION_STATE_CHANGED, lambda s, state: changes.append((s, state)))
        await session_manager.start()
        session = session_manager.get_session(PSU)
        assert session is not None
        await session.disconnect()
        await session_manager.scan()
        assert session.state is SessionState.CONNECTED
        assert [state for _s, state in changes] == [
            SessionState.DISCONNECTED,
            SessionState.CONNECTING,
            SessionState.CONNECTED,
        ]
        assert all(s is session for s, _state in changes)

    @pytest.mark.asyncio
    async def test_scan_leaves_running_work_alone(self, sim_manager: ResourceManager) -> None:
        config = SessionManagerConfig(scan_interval=60.0, session=SessionConfig(max_consecutive_errors=1))
        async with SessionManager(sim_manager, config, options_for=lambda _r: FAST) as manager:
            session = manager.get_session(PSU)
            assert session is not None
            with pytest.raises(ProtocolError):
                await session.execute(fail_protocol)
            assert session.state is SessionState.ERROR

            async def slow_idn(resource: MessageBasedResource) -> str:
                await asyncio.sleep(0.1)
                return await resource.query("*IDN?")

            work = asyncio.create_task(session.execute(slow_idn))
            await asyncio.sleep(0.02)
            await manager.scan()
            assert await work == "ACME,PSU-100,SN42,1.2.3"
            assert session.state is SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_scan_loop_survives_unexpected_errors(
        self, sim_manager: ResourceManager, caplog: pytest.LogCaptureFixture
    ) -> None:
        calls: list[str] = []
        list_resources = sim_manager.list_resources

        async def flaky_listing(query: str = "?*::INSTR") -> list[str]:
            calls.append(query)
            if len(calls) == 2:
                raise RuntimeError("lister bug")
            return await list_resources(query)

        config = SessionManagerConfig(scan_interval=0.02)
        with patch.object(sim_manager, "list_resources", flaky_listing):
            with caplog.at_level(logging.ERROR, logger="hwtest_visa.sessions.manager"):
                async with SessionManager(sim_manager, config, options_for=lambda _r: FAST) as manager:
                    await asyncio.sleep(0.2)
                    assert len(calls) > 3
                    assert manager.get_session(PSU) is not None
        assert "Resource scan failed" in caplog.text
        assert "lister bug" in caplog.text

    @pytest.mark.asyncio
    async def test_scan_leaves_session_down_without_auto_reconnect(self, sim_manager: ResourceManager) -> None:
        config = SessionManagerConfig(scan_interval=60.0, session=SessionConfig(auto_reconnect=False))
        async with SessionManager(sim_manager, config, options_for=lambda _r: FAST) as manager:
            session = manager.get_session(PSU)
            assert session is not None
            await session.disconnect()
            await manager.scan()
            assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_open_failure_adds_nothing(
        self, sim_manager: ResourceManager, session_manager: SessionManager
    ) -> None:
        added: list[DeviceSession] = []
        session_manager.on(SessionEvent.SESSION_ADDED, added.append)
        with patch.object(sim_manager, "open_resource", AsyncMock(side_effect=DeviceNotFoundError("gone"))):
            await session_manager.start()
        assert added == []
        assert session_manager.sessions == {}

    @pytest.mark.asyncio
    async def test_listing_failure_is_tolerated(
        self, sim_manager: ResourceManager, session_manager: SessionManager
    ) -> None:
        with patch.object(sim_manager, "list_resources", AsyncMock(side_effect=OSError("bus reset"))):
            await session_manager.start()
        assert session_manager.is_running
        assert session_manager.sessions == {}
