"""
Configuration Module

Loads the gateway configuration from an optional JSON file plus environment
variables (environment wins), validates it with the pydantic models in
schemas.py, and turns it into the objects the rest of the package consumes.

Environment:
    COLLAB_GATEWAY_CONFIG: Path to a JSON configuration file
    COLLAB_GATEWAY_HANDSHAKE_TIMEOUT: Seconds allowed for initialize (default 15)
    COLLAB_GATEWAY_CALL_TIMEOUT: Default per-call timeout (default 30)
    COLLAB_GATEWAY_GRACE_PERIOD: Seconds between SIGTERM and SIGKILL (default 5)
    COLLAB_GATEWAY_SHUTDOWN_DEADLINE: Seconds allowed for close_all (default 10)
    COLLAB_GATEWAY_MAX_ATTEMPTS: Tries per participant operation (default 1)
    COLLAB_GATEWAY_LOG_LEVEL: Logging level (default INFO)

Author: Collaborative Gateway Project
License: MIT
"""

import json
import logging
import os
import sys
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from .client import SpawnSpec
from .consensus import DelegatedConsensus, LocalConsensus
from .errors import ConfigError
from .schemas import GatewayConfig

logger = logging.getLogger(__name__)

__all__ = [
    'ENV_PREFIX',
    'ENV_OVERRIDES',
    'LOG_FORMAT',
    'default_participants_config',
    'load_config',
    'spawn_spec_provider',
    'build_consensus',
    'setup_logging',
]

ENV_PREFIX = "COLLAB_GATEWAY_"

# Environment variable suffix -> GatewayConfig field
ENV_OVERRIDES = {
    'HANDSHAKE_TIMEOUT': 'handshake_timeout',
    'CALL_TIMEOUT': 'call_timeout',
    'GRACE_PERIOD': 'grace_period',
    'SHUTDOWN_DEADLINE': 'shutdown_deadline',
    'MAX_ATTEMPTS': 'max_attempts',
    'LOG_LEVEL': 'log_level',
}

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def default_participants_config() -> Dict[str, Any]:
    """Two simulated participants running the bundled reference participant."""
    return {
        identity: {
            'command': sys.executable,
            'args': ['-m', 'collab_gateway.participant', '--persona', identity],
        }
        for identity in ("alpha", "beta")
    }


def _read_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}") from None
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a JSON object")
    return data


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """
    Build the effective configuration.

    Args:
        path: JSON file to read (falls back to COLLAB_GATEWAY_CONFIG, then to
            the built-in alpha/beta participants)
        environ: Environment mapping (os.environ when None)

    Returns:
        Validated GatewayConfig

    Raises:
        ConfigError: Unreadable file or invalid values
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(f"{ENV_PREFIX}CONFIG")

    data: Dict[str, Any] = _read_file(path) if path else {}
    if 'participants' not in data:
        data['participants'] = default_participants_config()

    for suffix, key in ENV_OVERRIDES.items():
        value = environ.get(f"{ENV_PREFIX}{suffix}")
        if value is not None and value.strip():
            data[key] = value.strip()

    try:
        config = GatewayConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.debug(
        f"Loaded configuration{f' from {path}' if path else ''}: "
        f"{len(config.participants)} participant(s), consensus={config.consensus.strategy}"
    )
    return config


def spawn_spec_provider(config: GatewayConfig):
    """
    Return a callable mapping participant identity -> SpawnSpec.

    Per-participant timeouts fall back to the global ones. Unknown identities
    raise KeyError (the registry turns that into UnknownParticipant).
    """
    def provide(identity: str) -> SpawnSpec:
        participant = config.participants[identity]
        return SpawnSpec(
            command=participant.command,
            args=list(participant.args),
            env=dict(participant.env),
            cwd=participant.cwd,
            handshake_timeout=participant.handshake_timeout or config.handshake_timeout,
            call_timeout=participant.call_timeout or config.call_timeout,
            grace_period=(participant.grace_period if participant.grace_period is not None
                          else config.grace_period),
            style=participant.style,
            tool=participant.tool,
        )
    return provide


def build_consensus(config: GatewayConfig):
    if config.consensus.strategy == "delegate":
        return DelegatedConsensus(config.consensus.synthesizer)
    return LocalConsensus()


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging on stderr (stdout carries the protocol)."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
