"""
Reference participant.

A small participant process that speaks the outbound protocol on its own
stdin/stdout and returns deterministic simulated answers. It is the default
participant when no configuration file is given, and the workhorse of the
subprocess tests.

Native methods: initialize, analyze, review, synthesize.
MCP methods: initialize, tools/list, tools/call (tool "analyze").

Usage:
    python -m collab_gateway.participant --persona alpha [--delay 0.5]
"""

import argparse
import asyncio
import hashlib
import logging
from typing import Any, Dict

from .config import setup_logging
from .endpoint import ProtocolEndpoint
from .errors import ProtocolError
from .protocol import PROTOCOL_VERSION, ErrorCode
from .transport import open_stdio_transport

logger = logging.getLogger(__name__)

TOOL_NAME = "analyze"


class ReferenceParticipant:
    """Request handler producing stable, structured answers per persona."""

    def __init__(self, persona: str, delay: float = 0.0):
        self.persona = persona
        self.delay = delay
        self.initialized = False

    def _fingerprint(self, *parts: Any) -> str:
        digest = hashlib.sha256("|".join([self.persona, *map(str, parts)]).encode('utf-8'))
        return digest.hexdigest()[:12]

    async def handle(self, method: str, params: Any) -> Any:
        params = params if isinstance(params, dict) else {}
        if method == "initialize":
            self.initialized = True
            return {
                'protocolVersion': PROTOCOL_VERSION,
                'serverInfo': {'name': f"participant-{self.persona}", 'version': "1.0.0"},
                'capabilities': {'tools': {}},
            }

        if self.delay:
            await asyncio.sleep(self.delay)

        if method == "analyze":
            return self.analyze(params)
        if method == "review":
            return self.review(params)
        if method == "synthesize":
            return self.synthesize(params)
        if method == "tools/list":
            return {'tools': [{
                'name': TOOL_NAME,
                'description': f"Analysis by {self.persona}",
                'inputSchema': {'type': 'object', 'properties': {'prompt': {'type': 'string'}},
                                'required': ['prompt']},
            }]}
        if method == "tools/call":
            return self.call_tool(params)
        raise ProtocolError(ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

    def analyze(self, params: Dict[str, Any]) -> Dict[str, Any]:
        task = params.get('task')
        if not task:
            raise ProtocolError(ErrorCode.INVALID_PARAMS, "analyze requires a task")
        content = params.get('content') or ""
        return {
            'participant': self.persona,
            'task': task,
            'domain': params.get('domain', 'general'),
            'priority': params.get('priority', 'medium'),
            'content_length': len(content),
            'fingerprint': self._fingerprint(task, content),
            'summary': f"{self.persona} analysis of: {task}",
        }

    def review(self, params: Dict[str, Any]) -> Dict[str, Any]:
        peers = params.get('peers') or {}
        return {
            'reviewer': self.persona,
            'reviewed': sorted(peers),
            'assessments': {
                peer: f"{self.persona} reviewed {peer} ({self._fingerprint(peer, result)})"
                for peer, result in sorted(peers.items())
            },
        }

    def synthesize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        results = params.get('results') or {}
        reviews = params.get('reviews') or {}
        return {
            'synthesizer': self.persona,
            'participants': sorted(results),
            'reviewers': sorted(reviews),
            'summary': f"{self.persona} consensus over {len(results)} analyses and {len(reviews)} reviews",
        }

    def call_tool(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if params.get('name') != TOOL_NAME:
            raise ProtocolError(ErrorCode.INVALID_PARAMS, f"Unknown tool: {params.get('name')}")
        prompt = (params.get('arguments') or {}).get('prompt', "")
        first_line = prompt.splitlines()[0] if prompt else ""
        return {
            'content': [
                {'type': 'text', 'text': f"[{self.persona}] {first_line}"},
                {'type': 'text', 'text': f"fingerprint {self._fingerprint(prompt)}"},
            ],
            'isError': False,
        }


async def serve(persona: str, delay: float = 0.0) -> None:
    participant = ReferenceParticipant(persona, delay)
    endpoint = ProtocolEndpoint(
        await open_stdio_transport(name=f"{persona}/stdio"),
        name=persona,
        request_handler=participant.handle,
        reply_to_parse_errors=True,
    )
    endpoint.start()
    logger.info(f"Participant {persona} ready")
    await endpoint.wait_closed()
    # Input ended; answer what was already received
    await endpoint.drain()
    await endpoint.close()
    logger.info(f"Participant {persona} stopped")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reference collaboration participant")
    parser.add_argument("--persona", default="participant", help="Identity reported in answers")
    parser.add_argument("--delay", type=float, default=0.0, help="Seconds to wait before answering")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    asyncio.run(serve(args.persona, args.delay))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
