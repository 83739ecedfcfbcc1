#!/usr/bin/env python3
"""
Unit tests for collab_gateway.participant.ReferenceParticipant

The handler is exercised in-process; the subprocess path is covered by the
client and registry tests.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from collab_gateway.errors import ProtocolError
from collab_gateway.participant import TOOL_NAME, ReferenceParticipant
from collab_gateway.protocol import PROTOCOL_VERSION, ErrorCode


class TestNativeMethods:
    """Tests for initialize / analyze / review / synthesize."""

    @pytest.mark.asyncio
    async def test_initialize(self):
        participant = ReferenceParticipant("alpha")
        result = await participant.handle("initialize", {"protocolVersion": PROTOCOL_VERSION})

        assert participant.initialized
        assert result["protocolVersion"] == PROTOCOL_VERSION
        assert result["serverInfo"]["name"] == "participant-alpha"

    @pytest.mark.asyncio
    async def test_analyze(self):
        participant = ReferenceParticipant("alpha")
        result = await participant.handle("analyze", {"task": "size the beam", "content": "abc",
                                                      "domain": "structural", "priority": "high"})

        assert result["participant"] == "alpha"
        assert result["task"] == "size the beam"
        assert result["domain"] == "structural"
        assert result["priority"] == "high"
        assert result["content_length"] == 3

    @pytest.mark.asyncio
    async def test_analyze_is_deterministic_per_persona(self):
        params = {"task": "t", "content": "c"}
        first = await ReferenceParticipant("alpha").handle("analyze", params)
        again = await ReferenceParticipant("alpha").handle("analyze", params)
        other = await ReferenceParticipant("beta").handle("analyze", params)

        assert first == again
        assert first["fingerprint"] != other["fingerprint"]

    @pytest.mark.asyncio
    async def test_analyze_requires_task(self):
        with pytest.raises(ProtocolError) as excinfo:
            await ReferenceParticipant("alpha").handle("analyze", {"content": "c"})
        assert excinfo.value.code == ErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_review(self):
        result = await ReferenceParticipant("beta").handle(
            "review", {"task": "t", "peers": {"gamma": {"x": 1}, "alpha": {"y": 2}}}
        )

        assert result["reviewer"] == "beta"
        assert result["reviewed"] == ["alpha", "gamma"]
        assert set(result["assessments"]) == {"alpha", "gamma"}

    @pytest.mark.asyncio
    async def test_synthesize(self):
        result = await ReferenceParticipant("alpha").handle(
            "synthesize", {"task": "t", "results": {"b": 1, "a": 2}, "reviews": {"a": 3}}
        )

        assert result["synthesizer"] == "alpha"
        assert result["participants"] == ["a", "b"]
        assert result["reviewers"] == ["a"]

    @pytest.mark.asyncio
    async def test_unknown_method(self):
        with pytest.raises(ProtocolError) as excinfo:
            await ReferenceParticipant("alpha").handle("compile", {})
        assert excinfo.value.code == ErrorCode.METHOD_NOT_FOUND


class TestToolMethods:
    """Tests for the MCP-style tools/list and tools/call."""

    @pytest.mark.asyncio
    async def test_tools_list(self):
        result = await ReferenceParticipant("alpha").handle("tools/list", None)
        assert [tool["name"] for tool in result["tools"]] == [TOOL_NAME]

    @pytest.mark.asyncio
    async def test_tools_call(self):
        result = await ReferenceParticipant("alpha").handle(
            "tools/call", {"name": TOOL_NAME, "arguments": {"prompt": "First line\nmore"}}
        )

        assert result["isError"] is False
        assert result["content"][0] == {"type": "text", "text": "[alpha] First line"}

    @pytest.mark.asyncio
    async def test_tools_call_unknown_tool(self):
        with pytest.raises(ProtocolError) as excinfo:
            await ReferenceParticipant("alpha").handle("tools/call", {"name": "delete", "arguments": {}})
        assert excinfo.value.code == ErrorCode.INVALID_PARAMS
