"""Agent CLI integration: line decoding, record translation and process supervision."""

from teamstream.agent.decoder import LineDecoder, decode_line
from teamstream.agent.process import (
    AgentProcess,
    ProcessEvent,
    ProcessExited,
    ProcessFailed,
    RecordMessage,
    StderrLine,
)
from teamstream.agent.translator import EventTranslator

__all__ = [
    "AgentProcess",
    "EventTranslator",
    "LineDecoder",
    "ProcessEvent",
    "ProcessExited",
    "ProcessFailed",
    "RecordMessage",
    "StderrLine",
    "decode_line",
]
