from ralph.backends.base import (
    AgentConfig,
    AgentResponse,
    AgentStream,
    CodingAgent,
    Done,
    Message,
    StreamEvent,
)
from ralph.backends.claude import ClaudeAgent, ProcessAgentStream, parse_stream_line

__all__ = [
    "AgentConfig",
    "AgentResponse",
    "AgentStream",
    "ClaudeAgent",
    "CodingAgent",
    "Done",
    "Message",
    "ProcessAgentStream",
    "StreamEvent",
    "parse_stream_line",
]
