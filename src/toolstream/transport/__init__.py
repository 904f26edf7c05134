"""Backend transports."""

from toolstream.transport.base import Ack, OutboundMessage, Transport, tool_result_message
from toolstream.transport.http import HttpTransport

__all__ = ["Ack", "HttpTransport", "OutboundMessage", "Transport", "tool_result_message"]
