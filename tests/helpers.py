"""Test helpers: content graph builders and an in-process fake registry."""

import io
import json
import random
import tarfile
import uuid
from collections import Counter
from pathlib import Path
from typing import Optional

from aiohttp import web

from oci_mirror.core.memory import MemoryStore
from oci_mirror.core.types import Descriptor
from oci_mirror.encoding.annotations import ANNOTATION_EXTRA_MANIFESTS
from oci_mirror.encoding.mediatype import (
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_INDEX,
    MEDIA_TYPE_IMAGE_LAYER,
    MEDIA_TYPE_IMAGE_MANIFEST,
    is_manifest,
)
from oci_mirror.utils.digest import calculate_digest


class GraphBuilder:
    """Builds a content graph whose nodes can be loaded into a store."""

    def __init__(self) -> None:
        # children are always created before their parents
        self.nodes: dict[str, tuple[Descriptor, bytes]] = {}

    def _add(self, media_type: str, data: bytes) -> Descriptor:
        desc = Descriptor.from_bytes(media_type, data)
        self.nodes.setdefault(desc.digest, (desc, data))
        return desc

    def blob(self, data: bytes, media_type: str = MEDIA_TYPE_IMAGE_LAYER) -> Descriptor:
        return self._add(media_type, data)

    def config(self, name: str) -> Descriptor:
        data = json.dumps({"architecture": "amd64", "os": "linux", "name": name}).encode()
        return self._add(MEDIA_TYPE_IMAGE_CONFIG, data)

    def manifest(
        self,
        config: Descriptor,
        layers: list[Descriptor],
        subject: Optional[Descriptor] = None,
        artifact_type: Optional[str] = None,
    ) -> Descriptor:
        document = {
            "schemaVersion": 2,
            "mediaType": MEDIA_TYPE_IMAGE_MANIFEST,
            "config": config.to_dict(),
            "layers": [layer.to_dict() for layer in layers],
        }
        if subject is not None:
            document["subject"] = subject.to_dict()
        if artifact_type is not None:
            document["artifactType"] = artifact_type
        return self._add(MEDIA_TYPE_IMAGE_MANIFEST, json.dumps(document).encode())

    def index(
        self,
        manifests: list[Descriptor],
        extra: Optional[list[Descriptor]] = None,
    ) -> Descriptor:
        document: dict = {
            "schemaVersion": 2,
            "mediaType": MEDIA_TYPE_IMAGE_INDEX,
            "manifests": [m.to_dict() for m in manifests],
        }
        if extra:
            document["annotations"] = {
                ANNOTATION_EXTRA_MANIFESTS: json.dumps([m.to_dict() for m in extra])
            }
        return self._add(MEDIA_TYPE_IMAGE_INDEX, json.dumps(document).encode())

    def image(self, name: str, *layers: bytes) -> Descriptor:
        """Create a config, the given layers and a manifest referencing them."""
        return self.manifest(self.config(name), [self.blob(data) for data in layers])

    def data(self, desc: Descriptor) -> bytes:
        return self.nodes[desc.digest][1]

    def blobs(self) -> set[str]:
        return {d for d, (desc, _) in self.nodes.items() if not is_manifest(desc.media_type)}

    def manifests(self) -> set[str]:
        return {d for d, (desc, _) in self.nodes.items() if is_manifest(desc.media_type)}

    async def store(self, tags: Optional[dict[str, Descriptor]] = None) -> MemoryStore:
        """Load every node into a new store and apply tags."""
        store = MemoryStore(chunk_size=7)
        for desc, data in self.nodes.values():
            await store.push(desc, data)
        for reference, desc in (tags or {}).items():
            await store.tag(desc, reference)
        store.pushes.clear()
        return store


def archive_members(path: Path) -> list[str]:
    """Return member names of an archive in order."""
    with tarfile.open(path, "r:*") as tar:
        return tar.getnames()


def archive_blob_digests(path: Path) -> list[str]:
    """Return the digests of the blob entries of an archive in order."""
    digests = []
    for name in archive_members(path):
        parts = name.split("/")
        if len(parts) == 3 and parts[0] == "blobs":
            digests.append(f"{parts[1]}:{parts[2]}")
    return digests


def read_ledger(path: Path) -> list[dict]:
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def shuffle_archive(src: Path, dest: Path, seed: int) -> list[str]:
    """Rewrite an archive with its file entries in a random order.

    Directory entries are dropped. Returns the new member order.
    """
    with tarfile.open(src, "r:*") as tar:
        entries = [
            (member, tar.extractfile(member).read())
            for member in tar.getmembers()
            if member.isfile()
        ]
    random.Random(seed).shuffle(entries)
    with tarfile.open(dest, "w") as tar:
        for member, data in entries:
            tar.addfile(member, io.BytesIO(data))
    return [member.name for member, _ in entries]


def write_tar(path: Path, entries: list[tuple[str, bytes]]) -> None:
    """Write a plain tar with the given file entries."""
    with tarfile.open(path, "w") as tar:
        for name, data in entries:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))


class FakeRegistry:
    """Registry API v2 subset served by aiohttp.web for tests.

    Content is kept per repository. ``pushes`` counts completed uploads per
    (kind, digest).
    """

    def __init__(self) -> None:
        self.blobs: dict[str, dict[str, bytes]] = {}
        self.manifests: dict[str, dict[str, tuple[str, bytes]]] = {}
        self.tags: dict[str, dict[str, str]] = {}
        self.uploads: dict[str, bytearray] = {}
        self.pushes: Counter = Counter()
        self.referrers = True
        self.url = ""

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/v2/", self.version)
        app.router.add_post("/v2/{name:.+}/blobs/uploads/", self.start_upload)
        app.router.add_patch("/v2/{name:.+}/blobs/uploads/{uuid}", self.patch_upload)
        app.router.add_put("/v2/{name:.+}/blobs/uploads/{uuid}", self.finish_upload)
        app.router.add_get("/v2/{name:.+}/blobs/{digest}", self.get_blob)
        app.router.add_get("/v2/{name:.+}/manifests/{reference}", self.get_manifest)
        app.router.add_put("/v2/{name:.+}/manifests/{reference}", self.put_manifest)
        app.router.add_get("/v2/{name:.+}/referrers/{digest}", self.get_referrers)
        return app

    def load(self, repository: str, builder: GraphBuilder, tags: dict[str, Descriptor]) -> None:
        """Seed a repository directly with the nodes of a graph."""
        for desc, data in builder.nodes.values():
            if is_manifest(desc.media_type):
                self.manifests.setdefault(repository, {})[desc.digest] = (desc.media_type, data)
            else:
                self.blobs.setdefault(repository, {})[desc.digest] = data
        for tag, desc in tags.items():
            self.tags.setdefault(repository, {})[tag] = desc.digest

    async def version(self, request: web.Request) -> web.Response:
        return web.json_response({})

    async def start_upload(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        upload_id = uuid.uuid4().hex
        self.uploads[upload_id] = bytearray()
        return web.Response(
            status=202, headers={"Location": f"/v2/{name}/blobs/uploads/{upload_id}"}
        )

    async def patch_upload(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        upload_id = request.match_info["uuid"]
        if upload_id not in self.uploads:
            return web.Response(status=404)
        self.uploads[upload_id] += await request.read()
        return web.Response(
            status=202, headers={"Location": f"/v2/{name}/blobs/uploads/{upload_id}"}
        )

    async def finish_upload(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        data = bytes(self.uploads.pop(request.match_info["uuid"], b""))
        data += await request.read()
        digest = request.query.get("digest", "")
        if calculate_digest(data) != digest:
            return web.json_response({"errors": [{"code": "DIGEST_INVALID"}]}, status=400)
        self.blobs.setdefault(name, {})[digest] = data
        self.pushes[("blob", digest)] += 1
        return web.Response(status=201, headers={"Docker-Content-Digest": digest})

    async def get_blob(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        data = self.blobs.get(name, {}).get(request.match_info["digest"])
        if data is None:
            return web.Response(status=404)
        return web.Response(body=data, content_type="application/octet-stream")

    def _lookup(self, name: str, reference: str) -> Optional[str]:
        if ":" in reference:
            return reference if reference in self.manifests.get(name, {}) else None
        return self.tags.get(name, {}).get(reference)

    async def get_manifest(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        digest = self._lookup(name, request.match_info["reference"])
        if digest is None:
            return web.Response(status=404)
        media_type, data = self.manifests[name][digest]
        return web.Response(
            body=data,
            headers={"Content-Type": media_type, "Docker-Content-Digest": digest},
        )

    async def put_manifest(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        reference = request.match_info["reference"]
        data = await request.read()
        digest = calculate_digest(data)
        if ":" in reference and reference != digest:
            return web.json_response({"errors": [{"code": "DIGEST_INVALID"}]}, status=400)
        self.manifests.setdefault(name, {})[digest] = (request.content_type, data)
        if ":" not in reference:
            self.tags.setdefault(name, {})[reference] = digest
        else:
            self.pushes[("manifest", digest)] += 1
        return web.Response(status=201, headers={"Docker-Content-Digest": digest})

    async def get_referrers(self, request: web.Request) -> web.Response:
        if not self.referrers:
            return web.Response(status=404)
        name = request.match_info["name"]
        subject = request.match_info["digest"]
        manifests = []
        for digest, (media_type, data) in sorted(self.manifests.get(name, {}).items()):
            document = json.loads(data)
            if (document.get("subject") or {}).get("digest") == subject:
                manifests.append({"mediaType": media_type, "digest": digest, "size": len(data)})
        index = {"schemaVersion": 2, "mediaType": MEDIA_TYPE_IMAGE_INDEX, "manifests": manifests}
        return web.json_response(index, content_type=MEDIA_TYPE_IMAGE_INDEX)
