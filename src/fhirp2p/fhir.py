"""Helpers for classifying and converting FHIR content."""

import json
import logging
from collections import Counter
from typing import Any

from .records.models import ContentType

logger = logging.getLogger(__name__)


def parse_ndjson(text: str) -> list[dict[str, Any]]:
    """Parse NDJSON into a list of resources, or [] if any line is invalid."""
    try:
        return [json.loads(line) for line in text.splitlines() if line.strip()]
    except json.JSONDecodeError as e:
        logger.debug(f"Invalid NDJSON: {e}")
        return []


def detect_format(data: str | bytes | None) -> ContentType:
    """
    Detect whether data is a FHIR Bundle (or single resource) or NDJSON.

    Returns:
        ContentType.BUNDLE, ContentType.NDJSON or ContentType.UNKNOWN
    """
    if not data:
        return ContentType.UNKNOWN
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            return ContentType.UNKNOWN

    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        lines = [line for line in data.splitlines() if line.strip()]
        if lines:
            try:
                first = json.loads(lines[0])
            except json.JSONDecodeError:
                return ContentType.UNKNOWN
            if isinstance(first, dict) and first.get("resourceType"):
                return ContentType.NDJSON
        return ContentType.UNKNOWN

    # A single resource is treated as a bundle of one
    if isinstance(parsed, dict) and parsed.get("resourceType"):
        return ContentType.BUNDLE
    return ContentType.UNKNOWN


def bundle_to_ndjson(bundle: dict[str, Any]) -> str:
    """Flatten a Bundle's entry resources into NDJSON."""
    entries = bundle.get("entry") or []
    resources = [e.get("resource") for e in entries if isinstance(e, dict) and e.get("resource")]
    return "\n".join(json.dumps(r, separators=(",", ":")) for r in resources)


def ndjson_to_bundle(text: str) -> dict[str, Any]:
    """Wrap NDJSON resources in a collection Bundle."""
    return {
        "resourceType": "Bundle",
        "type": "collection",
        "entry": [{"resource": r} for r in parse_ndjson(text)],
    }


def count_resources(data: str | dict[str, Any] | list[dict[str, Any]]) -> dict[str, Any]:
    """Count resources by type in a Bundle, NDJSON text, list, or single resource."""
    resources: list[dict[str, Any]] = []

    if isinstance(data, str):
        fmt = detect_format(data)
        if fmt == ContentType.BUNDLE:
            data = json.loads(data)
        elif fmt == ContentType.NDJSON:
            resources = parse_ndjson(data)

    if isinstance(data, list):
        resources = data
    elif isinstance(data, dict):
        if data.get("resourceType") == "Bundle":
            resources = [e["resource"] for e in data.get("entry") or [] if e.get("resource")]
        elif data.get("resourceType"):
            resources = [data]

    counts = Counter(r.get("resourceType", "Unknown") for r in resources)
    return {"total": len(resources), "types": dict(counts)}
