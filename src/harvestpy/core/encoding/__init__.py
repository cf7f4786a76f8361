"""Payload encoders for the collector wire format."""

from harvestpy.core.encoding.codec import (
    compress_body,
    decode_json,
    decode_serverless_payload,
    decode_trace_node,
    encode_json,
    encode_serverless_payload,
    encode_trace_node,
)

__all__ = [
    "compress_body",
    "decode_json",
    "decode_serverless_payload",
    "decode_trace_node",
    "encode_json",
    "encode_serverless_payload",
    "encode_trace_node",
]
