"""
Collaboration Orchestrator Module

Runs one collaboration session in three phases:

    Phase 1 - Parallel analysis: every participant analyzes the task concurrently
    Phase 2 - Cross-review: each successful participant reviews the others' results
    Phase 3 - Consensus: local aggregation or a delegated `synthesize` call

Failures are isolated per participant and recorded in the session; only a
session with zero Phase 1 successes raises (AllParticipantsFailed).

Author: Collaborative Gateway Project
License: MIT
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from .client import ParticipantClient
from .consensus import DelegatedConsensus, LocalConsensus
from .errors import (
    AllParticipantsFailed,
    ClientTerminated,
    ParticipantError,
    RemoteError,
    RegistryClosed,
    SpawnError,
    TransportError,
    UnknownParticipant,
)
from .protocol import ErrorCode
from .registry import ClientRegistry

logger = logging.getLogger(__name__)

__all__ = [
    'MODES',
    'PHASES',
    'DEFAULT_PARTICIPANTS',
    'CollaborationSession',
    'SessionResult',
    'CollaborationOrchestrator',
    'build_prompt',
    'extract_text',
]

MODES = ("plan", "apply")
PHASES = ("analysis", "review", "consensus")
DEFAULT_PARTICIPANTS = ["alpha", "beta"]

ConsensusStrategy = Union[LocalConsensus, DelegatedConsensus]


# ============================================================================
# SESSION STATE
# ============================================================================

@dataclass
class CollaborationSession:
    """
    Working state of one invoke call. Never persisted.

    Attributes:
        task: What the participants are asked to do
        content: Optional material to analyze
        participants: Ordered, de-duplicated identities
        results: identity -> Phase 1 result (successes only)
        errors: identity -> recorded Phase 1 failure
        reviews: reviewer identity -> Phase 2 review
        review_errors: reviewer identity -> recorded Phase 2 failure
        consensus: Phase 3 output
        timings: phase name -> seconds
    """
    task: str
    content: Optional[str] = None
    participants: List[str] = field(default_factory=list)
    domain: str = "general"
    priority: str = "medium"
    mode: str = "apply"
    cross_review: bool = True
    timeout: Optional[float] = None
    session_id: str = field(
        default_factory=lambda: f"COLLAB-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"
    )
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    reviews: Dict[str, Any] = field(default_factory=dict)
    review_errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    consensus: Optional[Dict[str, Any]] = None
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return [p for p in self.participants if p in self.results]

    def result(self) -> 'SessionResult':
        return SessionResult(
            session_id=self.session_id,
            task=self.task,
            mode=self.mode,
            participants=list(self.participants),
            results=dict(self.results),
            errors=dict(self.errors),
            reviews=dict(self.reviews),
            review_errors=dict(self.review_errors),
            consensus=self.consensus,
            timings=dict(self.timings),
        )


@dataclass
class SessionResult:
    """Value returned to the caller of invoke."""
    session_id: str
    task: str
    mode: str
    participants: List[str]
    results: Dict[str, Any]
    errors: Dict[str, Dict[str, Any]]
    reviews: Dict[str, Any]
    review_errors: Dict[str, Dict[str, Any]]
    consensus: Optional[Dict[str, Any]]
    timings: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'session_id': self.session_id,
            'task': self.task,
            'mode': self.mode,
            'participants': self.participants,
            'results': self.results,
            'errors': self.errors,
            'reviews': self.reviews,
            'review_errors': self.review_errors,
            'consensus': self.consensus,
            'timings': self.timings,
        }


# ============================================================================
# MCP-STYLE HELPERS
# ============================================================================

def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def build_prompt(operation: str, payload: Dict[str, Any]) -> str:
    """
    Render an operation payload as a single prompt for MCP tool participants.

    Args:
        operation: 'analyze', 'review' or 'synthesize'
        payload: The same payload a native participant would receive

    Returns:
        Prompt text
    """
    task = payload.get('task', '')

    if operation == "analyze":
        content = payload.get('content')
        return f"{task}\n\nContent to analyze:\n{content}" if content else task

    if operation == "review":
        peers = payload.get('peers', {})
        sections = "\n".join(
            f"## {peer.upper()} Analysis:\n{_as_text(result)}\n" for peer, result in peers.items()
        )
        return (
            f"{task}\n\n"
            f"Please review and discuss the following analysis results from your colleagues:\n\n"
            f"{sections}\n"
            f"As {payload.get('reviewer')}, please provide:\n"
            f"1. Your assessment of each colleague's analysis\n"
            f"2. Points of agreement and disagreement\n"
            f"3. Additional insights or corrections\n"
            f"4. Your final recommendation considering all perspectives"
        )

    if operation == "synthesize":
        results = "\n".join(
            f"## {p.upper()} Analysis:\n{_as_text(r)}\n" for p, r in payload.get('results', {}).items()
        )
        reviews = "\n".join(
            f"## {p.upper()} Cross-Review:\n{_as_text(r)}\n" for p, r in payload.get('reviews', {}).items()
        )
        prompt = f"{task}\n\nBuild a consensus from the following analyses:\n\n{results}"
        if reviews:
            prompt += f"\nand cross-reviews:\n\n{reviews}"
        return prompt

    raise ValueError(f"Unknown operation: {operation}")


def extract_text(result: Any) -> str:
    """Join the text parts of an MCP tools/call result."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        content = result.get('content')
        if isinstance(content, list):
            return "\n".join(
                item.get('text', '') for item in content
                if isinstance(item, dict) and item.get('type') == 'text'
            )
    return _as_text(result)


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class CollaborationOrchestrator:
    """
    Drives collaboration sessions over a shared ClientRegistry.

    Args:
        registry: Source of live participant clients
        consensus: Phase 3 strategy (LocalConsensus when None)
        max_attempts: Tries per participant operation; only process-level
            failures (termination, transport, spawn) are retried, never a
            closed registry or an unknown identity
        default_participants: Used when invoke omits participants
    """

    RETRYABLE = (ClientTerminated, TransportError, SpawnError)

    def __init__(self, registry: ClientRegistry, consensus: Optional[ConsensusStrategy] = None,
                 max_attempts: int = 1, default_participants: Optional[List[str]] = None):
        self.registry = registry
        self.consensus = consensus or LocalConsensus()
        self.max_attempts = max(1, int(max_attempts))
        self.default_participants = list(default_participants or DEFAULT_PARTICIPANTS)

    async def run(
        self,
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
        Run one collaboration session.

        Args:
            task: Task description (non-blank)
            content: Optional material to analyze
            participants: Identities to consult (defaults when None); duplicates
                are dropped, keeping first occurrence
            cross_review: Run Phase 2
            domain: Passed through to participants
            priority: Passed through to participants
            timeout: Per-call timeout override in seconds
            mode: 'apply' runs the phases, 'plan' only describes them

        Returns:
            SessionResult dict, or a plan dict in plan mode

        Raises:
            ValueError: Blank task, empty participant list or unknown mode
            AllParticipantsFailed: Phase 1 produced no result at all
        """
        if not task or not task.strip():
            raise ValueError("task must be a non-empty string")
        if mode not in MODES:
            raise ValueError(f"Unknown mode: {mode}")
        identities = list(dict.fromkeys(self.default_participants if participants is None else participants))
        if not identities:
            raise ValueError("at least one participant is required")

        session = CollaborationSession(
            task=task,
            content=content,
            participants=identities,
            domain=domain,
            priority=priority,
            mode=mode,
            cross_review=cross_review,
            timeout=timeout,
        )

        if mode == "plan":
            return self.plan(session)

        logger.info(f"Session {session.session_id}: starting with {', '.join(identities)}")
        started = time.monotonic()

        await self._analysis_phase(session)
        if not session.results:
            logger.error(f"Session {session.session_id}: all participants failed")
            raise AllParticipantsFailed(session.errors)

        if cross_review and len(session.results) >= 2:
            await self._review_phase(session)
        else:
            session.timings['review'] = 0.0

        phase_start = time.monotonic()
        session.consensus = await self.consensus.build(session, self._invoker(session))
        session.timings['consensus'] = round(time.monotonic() - phase_start, 3)
        session.timings['total'] = round(time.monotonic() - started, 3)

        logger.info(
            f"Session {session.session_id}: done in {session.timings['total']}s "
            f"({len(session.results)}/{len(identities)} succeeded, {len(session.reviews)} reviews)"
        )
        return session.result().to_dict()

    def plan(self, session: CollaborationSession) -> Dict[str, Any]:
        """Describe what an apply run would do, without spawning anything."""
        phases = [{'phase': 'analysis', 'participants': session.participants}]
        if session.cross_review and len(session.participants) >= 2:
            phases.append({
                'phase': 'review',
                'reviewers': {p: [o for o in session.participants if o != p] for p in session.participants},
            })
        consensus = {'phase': 'consensus', 'strategy': self.consensus.name}
        if isinstance(self.consensus, DelegatedConsensus):
            consensus['synthesizer'] = self.consensus.synthesizer
        phases.append(consensus)
        return {
            'session_id': session.session_id,
            'task': session.task,
            'mode': session.mode,
            'participants': session.participants,
            'phases': phases,
        }

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _analysis_phase(self, session: CollaborationSession) -> None:
        logger.info(f"Phase 1: parallel analysis by {len(session.participants)} participant(s)")
        phase_start = time.monotonic()
        payload = {
            'task': session.task,
            'content': session.content,
            'domain': session.domain,
            'priority': session.priority,
        }
        outcomes = await asyncio.gather(*(
            self._attempt(identity, "analyze", payload, session.timeout)
            for identity in session.participants
        ))
        for identity, (ok, value) in zip(session.participants, outcomes):
            if ok:
                session.results[identity] = value
            else:
                session.errors[identity] = value
        session.timings['analysis'] = round(time.monotonic() - phase_start, 3)

    async def _review_phase(self, session: CollaborationSession) -> None:
        reviewers = session.succeeded
        logger.info(f"Phase 2: cross-review by {len(reviewers)} participant(s)")
        phase_start = time.monotonic()
        settled = dict(session.results)
        outcomes = await asyncio.gather(*(
            self._attempt(
                reviewer,
                "review",
                {
                    'task': session.task,
                    'reviewer': reviewer,
                    'peers': {p: r for p, r in settled.items() if p != reviewer},
                },
                session.timeout,
            )
            for reviewer in reviewers
        ))
        for reviewer, (ok, value) in zip(reviewers, outcomes):
            if ok:
                session.reviews[reviewer] = value
            else:
                session.review_errors[reviewer] = value
        session.timings['review'] = round(time.monotonic() - phase_start, 3)

    # ------------------------------------------------------------------
    # Participant calls
    # ------------------------------------------------------------------

    def _invoker(self, session: CollaborationSession):
        async def invoke(identity: str, operation: str, payload: Dict[str, Any]) -> Any:
            return await self.invoke(identity, operation, payload, session.timeout)
        return invoke

    async def _attempt(self, identity: str, operation: str, payload: Dict[str, Any],
                       timeout: Optional[float]) -> Tuple[bool, Any]:
        try:
            return True, await self.invoke(identity, operation, payload, timeout)
        except ParticipantError as e:
            logger.error(f"Participant {identity} failed {operation}: {e.kind}: {e}")
            return False, e.to_dict()

    async def invoke(self, identity: str, operation: str, payload: Dict[str, Any],
                     timeout: Optional[float] = None) -> Any:
        """
        Run one operation on one participant, retrying process-level failures.

        Raises:
            ParticipantError: The last attempt's failure
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                client = await self.registry.get_or_create(identity)
                return await self._call(client, operation, payload, timeout)
            except (UnknownParticipant, RegistryClosed):
                raise
            except self.RETRYABLE as e:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    f"Participant {identity} {operation} attempt {attempt}/{self.max_attempts} "
                    f"failed ({e.kind}), retrying with a fresh client"
                )

    async def _call(self, client: ParticipantClient, operation: str, payload: Dict[str, Any],
                    timeout: Optional[float]) -> Any:
        spec = client.spec
        if spec.style != "mcp":
            return await client.call(operation, payload, timeout=timeout)

        result = await client.call(
            "tools/call",
            {'name': spec.tool, 'arguments': {'prompt': build_prompt(operation, payload)}},
            timeout=timeout,
        )
        text = extract_text(result)
        if isinstance(result, dict) and result.get('isError'):
            raise RemoteError(ErrorCode.INTERNAL_ERROR, text or "Tool reported an error", identity=client.identity)
        return text
