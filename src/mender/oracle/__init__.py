"""Oracle gateways: the external model that proposes fixes."""

from mender.oracle.client import OpenAIClient
from mender.oracle.gateway import OpenAIOracle, parse_tool_calls
from mender.oracle.protocols import OracleGateway, OracleReply

__all__ = [
    "OpenAIClient",
    "OpenAIOracle",
    "OracleGateway",
    "OracleReply",
    "parse_tool_calls",
]
