from .streamable_http import SessionTransport, TransportClosedError

__all__ = ["SessionTransport", "TransportClosedError"]
