"""JSON, deflate and base64 encoders for collector payloads."""

import base64
import gzip
import json
import zlib
from typing import Any

COMPRESSION_THRESHOLD = 64 * 1024


def encode_json(payload: Any) -> bytes:
    """Encode a payload to compact UTF-8 JSON.

    Args:
        payload: Any JSON-serializable value.

    Returns:
        The encoded bytes.
    """
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def decode_json(body: bytes) -> Any:
    """Decode a JSON body, None for an empty one."""
    if not body:
        return None
    return json.loads(body)


def compress_body(body: bytes) -> tuple[bytes, str]:
    """Gzip bodies above 64 KiB.

    Returns:
        The body to send and its Content-Encoding ("gzip" or "identity").
    """
    if len(body) > COMPRESSION_THRESHOLD:
        return gzip.compress(body), "gzip"
    return body, "identity"


def encode_trace_node(root_node: Any) -> str:
    """Deflate and base64 a trace root node, as stored in a trace sample."""
    return base64.b64encode(zlib.compress(encode_json(root_node))).decode("ascii")


def decode_trace_node(encoded: str) -> Any:
    return json.loads(zlib.decompress(base64.b64decode(encoded)))


def encode_serverless_payload(
    metadata: dict[str, Any], data: dict[str, Any]
) -> list[Any]:
    """Build the single-line envelope written at the end of an invocation.

    Args:
        metadata: Agent and protocol metadata.
        data: Collector method name mapped to its payload.

    Returns:
        ``[2, "NR_LAMBDA_MONITORING", metadata, base64(gzip(json(data)))]``.
    """
    compressed = gzip.compress(encode_json(data))
    return [
        2,
        "NR_LAMBDA_MONITORING",
        metadata,
        base64.b64encode(compressed).decode("ascii"),
    ]


def decode_serverless_payload(envelope: list[Any]) -> dict[str, Any]:
    return json.loads(gzip.decompress(base64.b64decode(envelope[3])))
