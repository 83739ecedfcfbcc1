"""Pydantic models for gateway requests and configuration."""

from typing import Dict, List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Inbound request schemas
class InvokeParams(BaseModel):
    """Parameters of the invoke operation."""
    model_config = ConfigDict(extra="forbid")

    task: str = Field(description="What the participants are asked to do")
    content: Optional[str] = Field(default=None, description="Material to analyze")
    participants: Optional[List[str]] = Field(
        default=None,
        min_length=1,
        description="Participant identities to consult; configured defaults when omitted",
    )
    cross_review: bool = True
    domain: str = "general"
    priority: Literal["low", "medium", "high", "critical"] = "medium"
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-call timeout in seconds")
    mode: Literal["plan", "apply"] = "apply"

    @field_validator("task")
    @classmethod
    def task_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("task must not be blank")
        return value


# Configuration schemas
class ParticipantConfig(BaseModel):
    """How to spawn and call one participant."""
    model_config = ConfigDict(extra="forbid")

    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    style: Literal["native", "mcp"] = "native"
    tool: Optional[str] = None
    handshake_timeout: Optional[float] = Field(default=None, gt=0)
    call_timeout: Optional[float] = Field(default=None, gt=0)
    grace_period: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def mcp_needs_tool(self) -> "ParticipantConfig":
        if self.style == "mcp" and not self.tool:
            raise ValueError("participants with style 'mcp' must name a tool")
        return self


class ConsensusConfig(BaseModel):
    """Phase 3 strategy."""
    model_config = ConfigDict(extra="forbid")

    strategy: Literal["local", "delegate"] = "local"
    synthesizer: Optional[str] = None

    @model_validator(mode="after")
    def delegate_needs_synthesizer(self) -> "ConsensusConfig":
        if self.strategy == "delegate" and not self.synthesizer:
            raise ValueError("strategy 'delegate' requires a synthesizer")
        return self


class GatewayConfig(BaseModel):
    """Complete gateway configuration (file values merged with environment)."""
    model_config = ConfigDict(extra="forbid")

    participants: Dict[str, ParticipantConfig]
    default_participants: List[str] = Field(default_factory=list)
    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    handshake_timeout: float = Field(default=15.0, gt=0)
    call_timeout: float = Field(default=30.0, gt=0)
    grace_period: float = Field(default=5.0, ge=0)
    shutdown_deadline: float = Field(default=10.0, gt=0)
    max_attempts: int = Field(default=1, ge=1)
    log_level: str = "INFO"

    @model_validator(mode="after")
    def references_are_known(self) -> "GatewayConfig":
        if not self.participants:
            raise ValueError("at least one participant must be configured")
        if not self.default_participants:
            self.default_participants = list(self.participants)
        unknown = [p for p in self.default_participants if p not in self.participants]
        if unknown:
            raise ValueError(f"default_participants not configured: {', '.join(unknown)}")
        synthesizer = self.consensus.synthesizer
        if synthesizer is not None and synthesizer not in self.participants:
            raise ValueError(f"consensus synthesizer not configured: {synthesizer}")
        return self
