"""
VisitProof: Canonical JSON Encoding — RFC 8785 (JCS)

Settlement events are signed over these bytes. A receiver re-encodes the
event body (without its signature) and must obtain the same bytes.

RFC 8785: https://www.rfc-editor.org/rfc/rfc8785
"""

import jcs


def canonicalize(obj: dict) -> bytes:
    """
    Encode a dict to RFC 8785 canonical JSON bytes.

    Output is deterministic regardless of key insertion order.
    All values must be JSON-primitive (str, int, float, bool, None, list, dict).
    """
    return jcs.canonicalize(obj)