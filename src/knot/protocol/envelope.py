"""Device envelope codec.

Device-scoped queries answer with ``{"devices": [<device>]}``.  Only an
envelope holding exactly one device is accepted; the device itself is
returned as compact canonical JSON and the envelope is dropped.
"""

from __future__ import annotations

import json

from knot.protocol.errors import ValidationError

EXPECTED_DEVICES = 1


def canonicalize_json(obj: object) -> str:
    """Serialize *obj* as compact JSON with sorted keys."""
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def extract_device(body: str | bytes) -> str:
    """Extract the single device object from a response envelope.

    Raises:
        ValidationError: If *body* is not JSON, has no ``devices`` array,
            or the array does not hold exactly one element.
    """
    try:
        doc = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Response is not valid JSON: {exc}") from exc

    if not isinstance(doc, dict) or "devices" not in doc:
        raise ValidationError("Response has no 'devices' field")

    devices = doc["devices"]
    if not isinstance(devices, list) or len(devices) != EXPECTED_DEVICES:
        raise ValidationError(
            f"Expected exactly {EXPECTED_DEVICES} device in response, "
            f"got {len(devices) if isinstance(devices, list) else type(devices).__name__}"
        )

    return canonicalize_json(devices[0])
