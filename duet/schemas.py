"""Request/response models — the contract between the service and clients."""

from __future__ import annotations

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

AgentType = Literal["gemini", "claude"]
Role = Literal["user", "gemini", "claude"]

# "thinking" and "code" are reserved; the runner only emits text/error.
ChunkType = Literal["thinking", "code", "text", "error"]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Chunk(BaseModel):
    """One unit of streamed CLI output or a synthetic diagnostic.

    Types:
        text   — a fragment of the tool's standard output
        error  — a fragment of standard error, or a timeout / exit / spawn notice
    """

    model_config = ConfigDict(frozen=True)

    source: AgentType
    content: str
    timestamp: int
    type: ChunkType


class CodeBlock(BaseModel):
    """A fenced code block found in agent output."""

    language: str = ""
    code: str


class Message(BaseModel):
    id: str
    role: Role
    content: str
    timestamp: int = Field(default_factory=now_ms)
    code_blocks: list[CodeBlock] | None = None


class Conversation(BaseModel):
    id: str
    messages: list[Message] = []
    created_at: int = Field(default_factory=now_ms)


class GenerateOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    skip_review: bool = Field(default=False, alias="skipReview")


class GenerateRequest(BaseModel):
    """Incoming body for /api/generate."""

    prompt: str
    options: GenerateOptions | None = None

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt must not be empty")
        return v

    @property
    def skip_review(self) -> bool:
        return bool(self.options and self.options.skip_review)


class CliAvailability(BaseModel):
    gemini: bool
    claude: bool


class HealthStatus(BaseModel):
    status: Literal["ok", "degraded"]
    cli: CliAvailability
