"""
Consensus strategies for Phase 3 of a collaboration session.

LocalConsensus aggregates Phase 1 results and Phase 2 reviews without any
further participant call. DelegatedConsensus asks one designated participant to
synthesize, and falls back to local aggregation if that call fails.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from .errors import ParticipantError

if TYPE_CHECKING:
    from .orchestrator import CollaborationSession

logger = logging.getLogger(__name__)

__all__ = [
    'PERSPECTIVE_SINGLE',
    'PERSPECTIVE_PARTIAL',
    'PERSPECTIVE_FULL',
    'LocalConsensus',
    'DelegatedConsensus',
]

PERSPECTIVE_SINGLE = "single"
PERSPECTIVE_PARTIAL = "partial"
PERSPECTIVE_FULL = "full"

# (identity, operation, payload) -> result, with the session's retry/style rules applied
ParticipantInvoker = Callable[[str, str, Dict[str, Any]], Awaitable[Any]]


def _perspective(succeeded: List[str], reviewed_by: List[str]) -> str:
    if len(succeeded) < 2:
        return PERSPECTIVE_SINGLE
    if set(reviewed_by) >= set(succeeded):
        return PERSPECTIVE_FULL
    return PERSPECTIVE_PARTIAL


class LocalConsensus:
    """Structured aggregation of a settled session; issues no calls."""

    name = "local"

    def aggregate(self, session: 'CollaborationSession') -> Dict[str, Any]:
        succeeded = [p for p in session.participants if p in session.results]
        reviewed_by = [p for p in session.participants if p in session.reviews]
        requested = len(session.participants)

        return {
            'strategy': self.name,
            'participants': succeeded,
            'perspective': _perspective(succeeded, reviewed_by),
            'coverage': round(len(succeeded) / requested, 3) if requested else 0.0,
            'reviewed_by': reviewed_by,
            'failed': [p for p in session.participants if p in session.errors],
            'contributions': {p: session.results[p] for p in succeeded},
            'reviews': {p: session.reviews[p] for p in reviewed_by},
        }

    async def build(self, session: 'CollaborationSession', invoke: ParticipantInvoker) -> Dict[str, Any]:
        return self.aggregate(session)


class DelegatedConsensus:
    """
    Ask one participant to synthesize the consensus.

    Args:
        synthesizer: Identity of the participant that receives `synthesize`
        fallback: Strategy used when the synthesizer call fails
    """

    name = "delegate"

    def __init__(self, synthesizer: str, fallback: Optional[LocalConsensus] = None):
        self.synthesizer = synthesizer
        self.fallback = fallback or LocalConsensus()

    async def build(self, session: 'CollaborationSession', invoke: ParticipantInvoker) -> Dict[str, Any]:
        base = self.fallback.aggregate(session)
        payload = {
            'task': session.task,
            'results': {p: session.results[p] for p in base['participants']},
            'reviews': base['reviews'],
        }
        try:
            synthesis = await invoke(self.synthesizer, "synthesize", payload)
        except ParticipantError as e:
            logger.error(f"Consensus synthesizer {self.synthesizer} failed: {e}; using local aggregation")
            base['consensus_error'] = {'identity': self.synthesizer, **e.to_dict()}
            return base

        base['strategy'] = self.name
        base['synthesizer'] = self.synthesizer
        base['synthesis'] = synthesis
        return base
