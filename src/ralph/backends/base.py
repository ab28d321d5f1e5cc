from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import TracebackType


@dataclass(slots=True)
class AgentConfig:
    max_turns: int = 50
    model: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    skip_permissions: bool = True
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AgentResponse:
    content: str
    turns: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    session_id: str = ""

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class Message:
    text: str


@dataclass(slots=True)
class Done:
    response: AgentResponse


StreamEvent = Message | Done


class AgentStream(ABC):
    """Owning, single-use stream of agent events.

    Yields zero or more ``Message`` followed by at most one ``Done``.
    ``aclose`` must release every resource the stream owns, whether or not it
    was exhausted.
    """

    def __aiter__(self) -> AgentStream:
        return self

    @abstractmethod
    async def __anext__(self) -> StreamEvent:
        """Return the next event or raise ``StopAsyncIteration``."""

    @abstractmethod
    async def aclose(self) -> None:
        """Stop the agent and release the stream."""

    async def __aenter__(self) -> AgentStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


class CodingAgent(ABC):
    @abstractmethod
    async def run(self, prompt: str, config: AgentConfig) -> AgentStream:
        """Start the agent on ``prompt`` and return its event stream."""
