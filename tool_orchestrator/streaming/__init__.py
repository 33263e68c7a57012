"""Streaming domain: SSE decoding and stream/result reconciliation."""

from .reconciler import StreamingReconciler, StreamingResult, TextStream
from .sse_parser import iter_sse_data

__all__ = ["StreamingReconciler", "StreamingResult", "TextStream", "iter_sse_data"]
