"""LXD event decoding and classification."""

from .classifier import Classification, EventClassifier, HostEvent, decode_event

__all__ = ["Classification", "EventClassifier", "HostEvent", "decode_event"]
