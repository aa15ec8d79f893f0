"""
Deterministic visitor bucketing.

A visitor id is hashed with the classic 31-multiplier string hash
(``hash = (hash << 5) - hash + code_unit``) truncated to a signed 32-bit
integer after every step. The bucket is ``abs(hash) % 100`` and the visitor
lands in control when the bucket is below the control share of the split.

The hash walks UTF-16 code units so that ids hash identically to the
browser-side implementation, including ids with non-BMP characters.
"""

from typing import Mapping

from app.models.experiment import Arm

_UINT32 = 0xFFFFFFFF
_SIGN_BIT = 0x80000000


def _to_int32(value: int) -> int:
    value &= _UINT32
    if value & _SIGN_BIT:
        value -= 1 << 32
    return value


def _utf16_code_units(text: str):
    # surrogatepass keeps lone surrogates as the single code unit a browser sees
    data = text.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def hash_visitor_id(visitor_id: str) -> int:
    h = 0
    for code_unit in _utf16_code_units(visitor_id):
        h = _to_int32((h << 5) - h + code_unit)
    return h


def bucket_for_visitor(visitor_id: str) -> int:
    """Map a visitor id to a bucket in [0, 100)."""
    return abs(hash_visitor_id(visitor_id)) % 100


def choose_variant(visitor_id: str, traffic_split: Mapping[str, int]) -> Arm:
    """
    Pick the arm for a visitor.

    A bucket equal to the control share falls into the variant arm.
    """
    if bucket_for_visitor(visitor_id) < traffic_split["control"]:
        return Arm.CONTROL
    return Arm.VARIANT
