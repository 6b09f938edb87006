"""KNOT cloud -- gateway transport to a Meshblu-style device registry.

Top-level convenience re-exports::

    from knot import HTTPTransport, create_transport
    from knot.protocol import Credential, extract_device  # protocol helpers
"""

__version__ = "0.1.0"

from knot.transport import HTTPTransport, TransportBase, create_transport  # noqa: E402

__all__ = ["__version__", "HTTPTransport", "TransportBase", "create_transport"]
