"""Dependency edges of manifests and indexes.

An index may carry "shadow" manifests: nested indexes that a registry without
index-of-index support could not hold in the native ``manifests`` list. They
are stored as a JSON list of descriptors in an annotation and are treated as
ordinary successors so that the graph stays connected.
"""

import json
from typing import Any, Optional

from ..core.storage import Fetcher, fetch_all
from ..core.types import Descriptor
from ..exceptions import ProtocolError
from .annotations import ANNOTATION_EXTRA_MANIFESTS
from .mediatype import is_image, is_index


def parse_manifest(desc: Descriptor, data: bytes) -> dict[str, Any]:
    """Decode manifest or index JSON.

    Raises:
        ProtocolError: If data is not a JSON object
    """
    try:
        document = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON in manifest {desc.digest}: {e}") from e
    if not isinstance(document, dict):
        raise ProtocolError(f"Manifest {desc.digest} must be a JSON object")
    return document


def _descriptors(desc: Descriptor, items: Any) -> list[Descriptor]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ProtocolError(f"Expected a list of descriptors in {desc.digest}")
    try:
        return [Descriptor.from_dict(item) for item in items]
    except ValueError as e:
        raise ProtocolError(f"Invalid descriptor in {desc.digest}: {e}") from e


def extra_manifests(index: dict[str, Any]) -> list[Descriptor]:
    """Extract the shadow manifests recorded in an index's annotations.

    Raises:
        ProtocolError: If the annotation is present but not a descriptor list
    """
    encoded = (index.get("annotations") or {}).get(ANNOTATION_EXTRA_MANIFESTS)
    if encoded is None:
        return []
    try:
        items = json.loads(encoded)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid {ANNOTATION_EXTRA_MANIFESTS} annotation: {e}") from e
    if not isinstance(items, list):
        raise ProtocolError(f"{ANNOTATION_EXTRA_MANIFESTS} must be a JSON list")
    try:
        return [Descriptor.from_dict(item) for item in items]
    except ValueError as e:
        raise ProtocolError(f"Invalid {ANNOTATION_EXTRA_MANIFESTS} entry: {e}") from e


def index_fallback(index: dict[str, Any]) -> dict[str, Any]:
    """Move nested indexes of an index into the extra manifests annotation.

    Returns a new index document; the input is left untouched.
    """
    nested = []
    images = []
    for item in index.get("manifests") or []:
        if is_index(item.get("mediaType", "")):
            nested.append(item)
        else:
            images.append(item)

    result = dict(index)
    result["manifests"] = images
    if nested:
        annotations = dict(index.get("annotations") or {})
        annotations[ANNOTATION_EXTRA_MANIFESTS] = json.dumps(nested, separators=(",", ":"))
        result["annotations"] = annotations
    return result


def subject_of(desc: Descriptor, data: bytes) -> Optional[Descriptor]:
    """Return the subject a manifest or index refers to, if any."""
    subject = parse_manifest(desc, data).get("subject")
    if subject is None:
        return None
    return _descriptors(desc, [subject])[0]


def successors_from_bytes(desc: Descriptor, data: bytes) -> list[Descriptor]:
    """Return the direct dependencies of a taggable given its content.

    Image manifests depend on their config and layers. Indexes depend on
    their manifests and their shadow manifests. Subjects are not dependencies.
    Anything else has no successors.
    """
    if is_image(desc.media_type):
        manifest = parse_manifest(desc, data)
        result = []
        if manifest.get("config") is not None:
            result.extend(_descriptors(desc, [manifest["config"]]))
        result.extend(_descriptors(desc, manifest.get("layers")))
        return result

    if is_index(desc.media_type):
        index = parse_manifest(desc, data)
        return _descriptors(desc, index.get("manifests")) + extra_manifests(index)

    return []


async def successors(fetcher: Fetcher, desc: Descriptor) -> list[Descriptor]:
    """Fetch a taggable from fetcher and return its direct dependencies."""
    if not (is_image(desc.media_type) or is_index(desc.media_type)):
        return []
    data = await fetch_all(fetcher, desc)
    return successors_from_bytes(desc, data)
