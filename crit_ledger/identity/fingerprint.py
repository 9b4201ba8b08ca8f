"""
Content fingerprints and id helpers.

The rolling hash is bit-compatible with history written by earlier installs:
a signed 32-bit `h = h * 31 + unit` over UTF-16 code units. It is not
collision resistant. Two different bodies can share a fingerprint, which is
why a fingerprint identity is never stored as an authoritative entry.
"""

from typing import List, Optional

from crit_ledger.core.datashapes import EMBEDDED_ID_PATTERN, EXTERNAL_ID_PATTERN, FINGERPRINT_PREFIX

PREVIEW_UNITS = 100


def _utf16_units(text: str) -> List[int]:
    data = text.encode('utf-16-le', 'surrogatepass')
    return [data[i] | (data[i + 1] << 8) for i in range(0, len(data), 2)]


def _units_to_text(units: List[int]) -> str:
    data = b''.join(unit.to_bytes(2, 'little') for unit in units)
    return data.decode('utf-16-le', 'surrogatepass')


def utf16_prefix(text: str, length: int = PREVIEW_UNITS) -> str:
    """First `length` UTF-16 code units of text (may split a surrogate pair)."""
    if len(text) <= length // 2:
        return text
    units = _utf16_units(text)
    if len(units) <= length:
        return text
    return _units_to_text(units[:length])


def rolling_hash(text: str) -> int:
    """Signed 32-bit rolling hash over the UTF-16 code units of text."""
    value = 0
    for unit in _utf16_units(text):
        value = ((value << 5) - value + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


def stable_hash(text: str) -> int:
    """Non-negative form of rolling_hash, used for classification rolls."""
    return abs(rolling_hash(text))


def content_fingerprint(author: Optional[str], body: Optional[str], timestamp: Optional[str] = None) -> str:
    """Fingerprint used for matching entries whose external id changed."""
    key = f"{author or ''}:{utf16_prefix(body or '')}:{timestamp or ''}"
    return f"{FINGERPRINT_PREFIX}{abs(rolling_hash(key))}"


def node_fingerprint(body: str, author: Optional[str] = None, timestamp: Optional[str] = None) -> str:
    """
    Fallback identity for a node that exposes no external id.

    Without an author label only the body prefix is hashed.
    """
    if author:
        key = f"{author}:{utf16_prefix(body)}:{timestamp or ''}"
    else:
        key = utf16_prefix(body)
    return f"{FINGERPRINT_PREFIX}{abs(rolling_hash(key))}"


def is_fingerprint(value: Optional[str]) -> bool:
    return bool(value) and str(value).startswith(FINGERPRINT_PREFIX)


def is_external_id(value) -> bool:
    """True for a bare 17-19 digit host id."""
    if value is None:
        return False
    return bool(EXTERNAL_ID_PATTERN.match(str(value).strip()))


def extract_external_id(value, exclude: Optional[str] = None) -> Optional[str]:
    """
    Pull a host id out of a composite value like "chat-messages-<partition>-<id>".

    The last 17-19 digit run wins; runs equal to `exclude` (the partition id)
    are skipped.
    """
    if value is None:
        return None
    runs = EMBEDDED_ID_PATTERN.findall(str(value).strip())
    for run in reversed(runs):
        if exclude is not None and run == str(exclude):
            continue
        return run
    return None
