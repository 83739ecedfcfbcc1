#!/usr/bin/env python3
"""
Collaborative Gateway MCP Server

Exposes the collaboration orchestrator as Model Context Protocol tools, for MCP
hosts that prefer tools over the gateway's own invoke method. The same
participants, registry and orchestrator are used as by collab-gateway.

Author: Collaborative Gateway Project
License: MIT
"""

from fastmcp import FastMCP
from typing import Dict, List, Optional, Any
import logging
import os

from pydantic import ValidationError

from collab_gateway.config import load_config, setup_logging
from collab_gateway.errors import AllParticipantsFailed
from collab_gateway.gateway import GatewayServer, build_gateway
from collab_gateway.schemas import InvokeParams

# Initialize MCP server
mcp = FastMCP("Collaborative Gateway")

logger = logging.getLogger(__name__)

# Built on first use so that configuration errors surface in tool results
_gateway: Optional[GatewayServer] = None


def get_gateway() -> GatewayServer:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway(load_config())
        logger.info(f"Gateway ready with participants: {', '.join(_gateway.orchestrator.default_participants)}")
    return _gateway


def configure_gateway(server: Optional[GatewayServer]) -> None:
    """Install (or clear, with None) the gateway used by the tools."""
    global _gateway
    _gateway = server


@mcp.tool
async def collaborate(
    task: str,
    content: Optional[str] = None,
    participants: Optional[List[str]] = None,
    cross_review: bool = True,
    domain: str = "general",
    priority: str = "medium",
    timeout: Optional[float] = None,
    mode: str = "apply",
) -> Dict[str, Any]:
    """
    Multi-participant collaborative analysis.

    Every participant analyzes the task in parallel; with cross_review each one
    then reviews the others' results, and a consensus is synthesized.

    Args:
        task: What the participants are asked to do
        content: Optional material to analyze
        participants: Participant identities (configured defaults when omitted)
        cross_review: Run the cross-review phase
        domain: Analysis domain, e.g. general, software, structural
        priority: low, medium, high or critical
        timeout: Per-call timeout in seconds
        mode: 'apply' to run, 'plan' to only describe the phases

    Returns:
        Dict with success flag plus the session result (or error details)
    """
    try:
        params = InvokeParams(
            task=task,
            content=content,
            participants=participants,
            cross_review=cross_review,
            domain=domain,
            priority=priority,
            timeout=timeout,
            mode=mode,
        )
    except ValidationError as e:
        return {
            "success": False,
            "error": "Invalid parameters",
            "details": e.errors(include_url=False, include_context=False),
        }

    try:
        result = await get_gateway().orchestrator.run(**params.model_dump())
    except AllParticipantsFailed as e:
        logger.error(f"Collaboration failed: {e}")
        return {"success": False, "error": str(e), "errors": e.errors}
    except Exception as e:
        logger.exception("Collaboration failed")
        return {"success": False, "error": f"Collaboration failed: {e}"}

    return {"success": True, **result}


@mcp.tool
def participant_status() -> Dict[str, Any]:
    """
    Report the participant clients currently held by the registry.

    Returns:
        Dict with success flag, configured default participants and live clients
    """
    try:
        gateway = get_gateway()
    except Exception as e:
        return {"success": False, "error": f"Gateway unavailable: {e}"}
    return {
        "success": True,
        "default_participants": gateway.orchestrator.default_participants,
        "consensus": gateway.orchestrator.consensus.name,
        "clients": gateway.registry.snapshot(),
    }


@mcp.tool
async def shutdown_participants() -> Dict[str, Any]:
    """
    Tear down every participant process. New ones are spawned on the next collaborate call.

    Returns:
        Dict with success flag and the closed / killed identities
    """
    global _gateway
    if _gateway is None:
        return {"success": True, "closed": [], "killed": []}
    gateway, _gateway = _gateway, None
    report = await gateway.registry.close_all(gateway.shutdown_deadline)
    return {"success": True, **report}


@mcp.resource("participants://status")
def participants_resource() -> Dict[str, Any]:
    """Live participant clients, as JSON."""
    return participant_status.fn()


if __name__ == "__main__":
    setup_logging(os.getenv('COLLAB_GATEWAY_LOG_LEVEL', 'INFO'))
    mcp.run()
