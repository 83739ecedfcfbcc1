"""
Gateway Server Module

Serves the inbound JSON-RPC channel (stdin/stdout by default):

    initialize         -> {protocolVersion, serverInfo, capabilities}
    list-capabilities  -> {operations: [{name, description, inputSchema}]}
    invoke             -> collaboration session result

Logging goes to stderr; stdout carries protocol traffic only.

Author: Collaborative Gateway Project
License: MIT
"""

import argparse
import asyncio
import logging
import signal
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .config import build_consensus, load_config, setup_logging, spawn_spec_provider
from .endpoint import ProtocolEndpoint
from .errors import AllParticipantsFailed, ConfigError, ProtocolError
from .orchestrator import CollaborationOrchestrator
from .protocol import GATEWAY_NAME, GATEWAY_VERSION, PROTOCOL_VERSION, ErrorCode
from .registry import ClientRegistry
from .schemas import GatewayConfig, InvokeParams
from .transport import StreamTransport, open_stdio_transport

logger = logging.getLogger(__name__)

__all__ = [
    'INVOKE_DESCRIPTION',
    'GatewayServer',
    'build_gateway',
    'serve_stdio',
    'main',
]

INVOKE_DESCRIPTION = (
    "Multi-participant collaborative analysis: parallel analysis, optional "
    "cross-review and consensus synthesis"
)


class GatewayServer:
    """
    Inbound method dispatch for the gateway.

    Args:
        orchestrator: Runs invoke sessions
        registry: Participant clients (closed by shutdown())
        shutdown_deadline: Seconds allowed for registry.close_all
    """

    def __init__(self, orchestrator: CollaborationOrchestrator, registry: ClientRegistry,
                 shutdown_deadline: Optional[float] = None):
        self.orchestrator = orchestrator
        self.registry = registry
        self.shutdown_deadline = shutdown_deadline
        self.endpoint: Optional[ProtocolEndpoint] = None
        self.client_info: Any = None

    def attach(self, transport: StreamTransport) -> ProtocolEndpoint:
        """Bind this server to a transport and start reading."""
        self.endpoint = ProtocolEndpoint(
            transport,
            name="gateway",
            request_handler=self.handle_request,
            notification_handler=self.handle_notification,
            reply_to_parse_errors=True,
        )
        self.endpoint.start()
        return self.endpoint

    async def handle_request(self, method: str, params: Any) -> Any:
        if method == "initialize":
            return self.initialize(params)
        if method == "list-capabilities":
            return self.list_capabilities()
        if method == "invoke":
            return await self.invoke(params)
        raise ProtocolError(ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

    def handle_notification(self, method: str, params: Any) -> None:
        if method == "notifications/initialized":
            logger.info("Gateway client completed initialization")
        elif method == "notifications/cancelled":
            logger.info(f"Gateway client cancelled a request: {params}")
        else:
            logger.debug(f"Ignoring notification {method}")

    def initialize(self, params: Any) -> Dict[str, Any]:
        if isinstance(params, dict):
            self.client_info = params.get('clientInfo')
        logger.info(f"Gateway initialized by {self.client_info or 'unknown client'}")
        return {
            'protocolVersion': PROTOCOL_VERSION,
            'serverInfo': {'name': GATEWAY_NAME, 'version': GATEWAY_VERSION},
            'capabilities': {'operations': {}},
        }

    def list_capabilities(self) -> Dict[str, Any]:
        return {
            'operations': [{
                'name': 'invoke',
                'description': INVOKE_DESCRIPTION,
                'inputSchema': InvokeParams.model_json_schema(),
            }]
        }

    async def invoke(self, params: Any) -> Dict[str, Any]:
        try:
            request = InvokeParams.model_validate(params if params is not None else {})
        except ValidationError as e:
            raise ProtocolError(
                ErrorCode.INVALID_PARAMS,
                "Invalid params for invoke",
                data=e.errors(include_url=False, include_context=False),
            ) from e

        try:
            return await self.orchestrator.run(**request.model_dump())
        except AllParticipantsFailed as e:
            raise ProtocolError(ErrorCode.INTERNAL_ERROR, str(e), data={'errors': e.errors}) from e

    async def shutdown(self) -> Dict[str, Any]:
        """Close the inbound channel and every participant."""
        if self.endpoint is not None:
            await self.endpoint.close()
        return await self.registry.close_all(self.shutdown_deadline)


def build_gateway(config: GatewayConfig) -> GatewayServer:
    registry = ClientRegistry(spawn_spec_provider(config))
    orchestrator = CollaborationOrchestrator(
        registry,
        consensus=build_consensus(config),
        max_attempts=config.max_attempts,
        default_participants=config.default_participants,
    )
    return GatewayServer(orchestrator, registry, shutdown_deadline=config.shutdown_deadline)


async def serve_stdio(config: GatewayConfig) -> Dict[str, Any]:
    """
    Serve on stdin/stdout until EOF or SIGINT/SIGTERM.

    On EOF every request already received is still answered before the
    participants are closed; a signal closes them straight away.

    Returns:
        The registry's close_all report
    """
    server = build_gateway(config)
    endpoint = server.attach(await open_stdio_transport())

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Signal handler for {sig.name} not supported here")

    logger.info(f"{GATEWAY_NAME} {GATEWAY_VERSION} serving on stdio")
    closed = asyncio.ensure_future(endpoint.wait_closed())
    stopped = asyncio.ensure_future(stop.wait())
    await asyncio.wait([closed, stopped], return_when=asyncio.FIRST_COMPLETED)

    if not stop.is_set():
        logger.info("Input closed, finishing in-flight requests")
        draining = asyncio.ensure_future(endpoint.drain())
        await asyncio.wait([draining, stopped], return_when=asyncio.FIRST_COMPLETED)
        draining.cancel()
    for waiter in (closed, stopped):
        waiter.cancel()

    logger.info("Gateway shutting down")
    report = await server.shutdown()
    logger.info(f"Participants closed: {report['closed']}, killed: {report['killed']}")
    return report


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="collab-gateway", description=INVOKE_DESCRIPTION)
    parser.add_argument("--config", help="JSON configuration file (overrides COLLAB_GATEWAY_CONFIG)")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging()
        logger.error(str(e))
        return 2

    setup_logging(config.log_level)
    asyncio.run(serve_stdio(config))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
