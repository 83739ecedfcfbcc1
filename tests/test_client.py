#!/usr/bin/env python3
"""
Integration tests for collab_gateway.client

These spawn real child processes: the bundled reference participant and
tests/stub_participant.py, which can misbehave on demand.

Tests cover:
- spawn -> handshake -> ready -> close lifecycle
- SpawnError, HandshakeTimeout, rejected handshake
- CallTimeout with a discarded late response
- RemoteError passthrough
- unexpected exit while in use -> ClientTerminated, FAILED, on_terminated
- SIGTERM ignored -> SIGKILL after the grace period
- ready <-> in_use toggling under concurrent calls
- calls before the handshake / after teardown
"""

import asyncio
import os
import signal
import sys
import time
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from collab_gateway.client import (
    ClientState,
    ParticipantClient,
    SpawnSpec,
    VALID_CLIENT_TRANSITIONS,
)
from collab_gateway.errors import (
    CallTimeout,
    ClientNotReady,
    ClientTerminated,
    HandshakeTimeout,
    InvalidStateTransition,
    RemoteError,
    SpawnError,
)
from fixtures import participant_spec, stub_spec


# ============================================================================
# STATE MACHINE
# ============================================================================

class TestStateMachine:
    """Tests for the transition table itself."""

    def test_terminal_states_have_no_exits(self):
        assert VALID_CLIENT_TRANSITIONS[ClientState.CLOSED] == []
        assert VALID_CLIENT_TRANSITIONS[ClientState.FAILED] == []

    def test_failed_reachable_from_every_non_terminal_state(self):
        for state, targets in VALID_CLIENT_TRANSITIONS.items():
            if state not in (ClientState.CLOSED, ClientState.FAILED):
                assert ClientState.FAILED in targets

    def test_only_back_edge_is_ready_in_use(self):
        order = [ClientState.SPAWNING, ClientState.HANDSHAKING, ClientState.READY,
                 ClientState.IN_USE, ClientState.CLOSING, ClientState.CLOSED]
        back_edges = [
            (state, target)
            for state, targets in VALID_CLIENT_TRANSITIONS.items()
            for target in targets
            if target in order and state in order and order.index(target) < order.index(state)
        ]
        assert back_edges == [(ClientState.IN_USE, ClientState.READY)]

    def test_spawn_spec_env_layers_over_os_environ(self):
        spec = SpawnSpec(command="x", env={"COLLAB_TEST_VAR": "1"})
        env = spec.build_env()
        assert env["COLLAB_TEST_VAR"] == "1"
        assert env.get("PATH") == os.environ.get("PATH")
        assert spec.argv() == ["x"]


# ============================================================================
# LIFECYCLE
# ============================================================================

class TestLifecycle:
    """Tests for spawn, handshake and teardown."""

    @pytest.mark.asyncio
    async def test_start_call_close(self):
        terminated = []
        client = ParticipantClient("alpha", participant_spec("alpha"), on_terminated=terminated.append)

        await client.start()
        assert client.state is ClientState.READY
        assert client.pid is not None
        assert client.server_info["serverInfo"]["name"] == "participant-alpha"

        result = await client.call("analyze", {"task": "check the weld", "content": "abc"})
        assert result["participant"] == "alpha"
        assert result["content_length"] == 3
        assert client.state is ClientState.READY

        await client.close()
        assert client.state is ClientState.CLOSED
        assert client.exit_code is not None
        assert terminated == [client]
        assert client.failure is None

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        spec = SpawnSpec(command="/nonexistent/participant-binary")
        client = ParticipantClient("ghost", spec)

        with pytest.raises(SpawnError) as excinfo:
            await client.start()
        assert excinfo.value.identity == "ghost"
        assert client.state is ClientState.FAILED
        assert client.failure is excinfo.value

    @pytest.mark.asyncio
    async def test_handshake_timeout_kills_process(self):
        client = ParticipantClient("mute", stub_spec("--no-handshake", handshake_timeout=0.3))

        started = time.monotonic()
        with pytest.raises(HandshakeTimeout):
            await client.start()
        assert time.monotonic() - started < 5
        assert client.state is ClientState.FAILED
        assert client.exit_code == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_rejected_handshake(self):
        client = ParticipantClient("picky", stub_spec("--reject-handshake"))

        with pytest.raises(RemoteError) as excinfo:
            await client.start()
        assert excinfo.value.code == -32602
        assert excinfo.value.identity == "picky"
        assert client.state is ClientState.FAILED

    @pytest.mark.asyncio
    async def test_start_twice_is_invalid(self):
        client = ParticipantClient("alpha", participant_spec("alpha"))
        await client.start()
        try:
            with pytest.raises(InvalidStateTransition):
                await client.start()
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_sigterm_ignored_escalates_to_sigkill(self):
        client = ParticipantClient("stubborn", stub_spec("--ignore-sigterm", "--linger", "30", grace_period=0.3))
        await client.start()

        started = time.monotonic()
        await client.close()
        elapsed = time.monotonic() - started

        assert client.state is ClientState.CLOSED
        assert client.exit_code == -signal.SIGKILL
        assert 0.3 <= elapsed < 5

    @pytest.mark.asyncio
    async def test_kill_is_immediate(self):
        client = ParticipantClient("stubborn", stub_spec("--ignore-sigterm", "--linger", "30", grace_period=30))
        await client.start()

        started = time.monotonic()
        await client.kill()

        assert time.monotonic() - started < 5
        assert client.is_terminal
        assert client.exit_code == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        client = ParticipantClient("alpha", participant_spec("alpha"))
        await client.start()
        await asyncio.gather(client.close(), client.close())
        await client.close()
        assert client.state is ClientState.CLOSED


# ============================================================================
# CALLS
# ============================================================================

class TestCalls:
    """Tests for call() outcomes."""

    @pytest.mark.asyncio
    async def test_call_before_start(self):
        client = ParticipantClient("alpha", participant_spec("alpha"))
        with pytest.raises(ClientNotReady):
            await client.call("analyze", {"task": "t"})

    @pytest.mark.asyncio
    async def test_call_after_close(self):
        client = ParticipantClient("alpha", participant_spec("alpha"))
        await client.start()
        await client.close()
        with pytest.raises(ClientTerminated):
            await client.call("analyze", {"task": "t"})

    @pytest.mark.asyncio
    async def test_remote_error(self):
        client = ParticipantClient("stub", stub_spec())
        await client.start()
        try:
            with pytest.raises(RemoteError) as excinfo:
                await client.call("fail", {"x": 1})
            assert excinfo.value.code == -32000
            assert excinfo.value.data == {"method": "fail"}
            assert excinfo.value.identity == "stub"
            assert client.state is ClientState.READY
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_timeout_then_late_response_discarded(self):
        client = ParticipantClient("slowpoke", stub_spec("--delay", "slow=0.5"))
        await client.start()
        try:
            with pytest.raises(CallTimeout) as excinfo:
                await client.call("slow", timeout=0.1)
            assert excinfo.value.identity == "slowpoke"

            # The late "slow" answer arrives while this call is pending
            result = await client.call("echo", {"n": 1}, timeout=2)
            assert result == {"n": 1}
            await asyncio.sleep(0.6)
            assert await client.call("echo", {"n": 2}, timeout=2) == {"n": 2}
            assert client.is_live
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_concurrent_calls_toggle_in_use(self):
        client = ParticipantClient("stub", stub_spec("--delay", "wait=0.3"))
        await client.start()
        try:
            calls = [asyncio.ensure_future(client.call("wait", {"i": i})) for i in range(3)]
            await asyncio.sleep(0.1)
            assert client.state is ClientState.IN_USE
            assert client.in_flight == 3

            results = await asyncio.gather(*calls)
            assert [r["params"]["i"] for r in results] == [0, 1, 2]
            assert client.state is ClientState.READY
            assert client.in_flight == 0
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_noise_on_stdout_is_ignored(self):
        client = ParticipantClient("noisy", stub_spec("--noise"))
        await client.start()
        try:
            assert await client.call("echo", "hello") == "hello"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_crash_mid_call(self):
        terminated = []
        client = ParticipantClient("fragile", stub_spec("--crash-on", "explode", "--delay", "wait=5"),
                                   on_terminated=terminated.append)
        await client.start()

        waiting = asyncio.ensure_future(client.call("wait"))
        await asyncio.sleep(0.05)
        with pytest.raises(ClientTerminated):
            await client.call("explode")
        with pytest.raises(ClientTerminated):
            await asyncio.wait_for(waiting, 5)

        await asyncio.wait_for(client.wait_closed(), 5)
        assert client.state is ClientState.FAILED
        assert client.exit_code == 3
        assert isinstance(client.failure, ClientTerminated)
        assert terminated == [client]

    @pytest.mark.asyncio
    async def test_background_teardown_failure_is_logged(self, caplog):
        client = ParticipantClient("fragile", stub_spec("--crash-on", "explode"))
        await client.start()

        with patch.object(client, "_stop_process", side_effect=RuntimeError("cannot reap")):
            with pytest.raises(ClientTerminated):
                await client.call("explode")
            for _ in range(100):
                if client._teardown_task is not None and client._teardown_task.done():
                    break
                await asyncio.sleep(0.05)
            await asyncio.sleep(0)

        assert client._teardown_task.done()
        assert "fragile: teardown failed" in caplog.text
        assert "cannot reap" in caplog.text

    @pytest.mark.asyncio
    async def test_close_resolves_in_flight_calls(self):
        client = ParticipantClient("stub", stub_spec("--delay", "wait=5"))
        await client.start()

        waiting = asyncio.ensure_future(client.call("wait"))
        await asyncio.sleep(0.05)
        await client.close()

        with pytest.raises(ClientTerminated):
            await waiting
        assert client.state is ClientState.CLOSED

    @pytest.mark.asyncio
    async def test_info_snapshot(self):
        client = ParticipantClient("alpha", participant_spec("alpha"))
        await client.start()
        try:
            info = client.info()
            assert info["identity"] == "alpha"
            assert info["state"] == "ready"
            assert info["pid"] == client.pid
            assert info["failure"] is None
        finally:
            await client.close()
