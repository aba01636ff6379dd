"""Magnet URI creation and parsing."""

import base64
import re
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, quote

from .errors import MalformedLocator

MAGNET_PREFIX = "magnet:?"
BTIH_PREFIX = "urn:btih:"

# Same unreserved set as JavaScript's encodeURIComponent
_URI_COMPONENT_SAFE = "-_.!~*'()"

_HEX_HASH = re.compile(r"^[a-fA-F0-9]{40}$")
_BASE32_HASH = re.compile(r"^[a-zA-Z2-7]{32}$")


@dataclass
class MagnetLink:
    """Parsed magnet descriptor."""

    info_hash: str
    name: str | None = None
    trackers: list[str] = field(default_factory=list)

    def to_uri(self) -> str:
        """Render this link back into a magnet URI."""
        return create_magnet_uri(self.info_hash, self.name, self.trackers)


def create_magnet_uri(
    info_hash: str,
    name: str | None = None,
    trackers: list[str] | tuple[str, ...] = (),
) -> str:
    """
    Build a magnet URI.

    Args:
        info_hash: Content hash of the swarm
        name: Optional display name (dn)
        trackers: Tracker URLs (tr), in order

    Returns:
        Magnet URI with URL-encoded dn and tr values
    """
    if not info_hash:
        raise MalformedLocator("Invalid torrent info: missing info hash")

    uri = f"{MAGNET_PREFIX}xt={BTIH_PREFIX}{info_hash}"
    if name:
        uri += f"&dn={quote(name, safe=_URI_COMPONENT_SAFE)}"
    for tracker in trackers:
        uri += f"&tr={quote(tracker, safe=_URI_COMPONENT_SAFE)}"
    return uri


def parse_magnet_uri(uri: str) -> MagnetLink:
    """
    Parse a magnet URI into its info hash, name and trackers.

    Raises:
        MalformedLocator: If the text is not a magnet URI or has no btih xt
    """
    if not uri or not uri.startswith(MAGNET_PREFIX):
        raise MalformedLocator(f"Invalid magnet URI: must start with {MAGNET_PREFIX!r}")

    params = parse_qsl(uri[len(MAGNET_PREFIX):], keep_blank_values=True)

    info_hash = None
    name = None
    trackers = []
    for key, value in params:
        if key == "xt" and info_hash is None and value.startswith(BTIH_PREFIX):
            info_hash = value[len(BTIH_PREFIX):]
        elif key == "dn" and name is None:
            name = value or None
        elif key == "tr":
            trackers.append(value)

    if not info_hash:
        raise MalformedLocator("Could not extract info hash from magnet URI: missing xt=urn:btih:")

    return MagnetLink(info_hash=info_hash, name=name, trackers=trackers)


def is_info_hash(text: str) -> bool:
    """Check whether text is a bare hex or base32 info hash."""
    return bool(_HEX_HASH.match(text) or _BASE32_HASH.match(text))


def normalize_info_hash(text: str) -> str:
    """Convert a base32 info hash to lowercase hex; hex input is lowercased."""
    if _BASE32_HASH.match(text):
        return base64.b32decode(text.upper()).hex()
    return text.lower()
