"""Image manifest, config and layer metadata."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Optional, Union

from .models import ImageLayer, Mount

__all__ = [
    "CONTENT_STORE_ROOT",
    "build_image_layers",
    "calculate_chain_ids",
    "compression_type",
    "content_path",
    "describe_image_target",
    "is_manifest_type",
    "parse_diff_ids",
    "read_only_layer_paths",
    "rw_layer_path",
]

CONTENT_STORE_ROOT = "/var/lib/containerd/io.containerd.content.v1.content/blobs"

_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
_DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
_OCI_INDEX = "application/vnd.oci.image.index.v1+json"

_COMPRESSION_BY_MEDIA_TYPE = {
    "application/vnd.docker.image.rootfs.diff.tar.gzip": "gzip",
    "application/vnd.docker.image.rootfs.foreign.diff.tar.gzip": "gzip",
    "application/vnd.oci.image.layer.v1.tar+gzip": "gzip",
    "application/vnd.docker.image.rootfs.diff.tar.zstd": "zstd",
    "application/vnd.oci.image.layer.v1.tar+zstd": "zstd",
    "application/vnd.docker.image.rootfs.diff.tar": "",
    "application/vnd.docker.image.rootfs.foreign.diff.tar": "",
    "application/vnd.oci.image.layer.v1.tar": "",
}

# Called with a chain ID; returns None when the snapshot is not unpacked,
# otherwise its (size, inodes) disk usage.
SnapshotStat = Callable[[str], Optional[tuple[int, int]]]


def _get(obj: Any, name: str, default: Any = None) -> Any:
    """Look up a JSON field, matching the name case-insensitively."""
    if not isinstance(obj, Mapping):
        return default
    if name in obj:
        return default if obj[name] is None else obj[name]
    lowered = name.lower()
    for key, value in obj.items():
        if isinstance(key, str) and key.lower() == lowered:
            return default if value is None else value
    return default


def _split_digest(digest: str) -> tuple[str, str]:
    algorithm, sep, encoded = digest.partition(":")
    if not sep:
        raise ValueError(f"no ':' separator in digest {digest!r}")
    return algorithm, encoded


def calculate_chain_ids(diff_ids: Sequence[str]) -> list[str]:
    """Return the chain ID of each layer, from base to top."""
    chain_ids: list[str] = []
    for diff_id in diff_ids:
        if not chain_ids:
            chain_ids.append(diff_id)
            continue
        payload = f"{chain_ids[-1]} {diff_id}".encode()
        chain_ids.append("sha256:" + hashlib.sha256(payload).hexdigest())
    return chain_ids


def content_path(digest: str) -> str:
    """Return the content store path of the blob with the given digest."""
    algorithm, encoded = _split_digest(digest)
    return f"{CONTENT_STORE_ROOT}/{algorithm}/{encoded}"


def compression_type(media_type: str) -> str:
    """Return "gzip", "zstd" or "" for a layer media type."""
    if media_type in _COMPRESSION_BY_MEDIA_TYPE:
        return _COMPRESSION_BY_MEDIA_TYPE[media_type]
    if "+gzip" in media_type:
        return "gzip"
    if "+zstd" in media_type:
        return "zstd"
    return ""


def is_manifest_type(media_type: str) -> bool:
    """Tell whether a media type is a single-platform image manifest."""
    return media_type in (_DOCKER_MANIFEST, _OCI_MANIFEST)


def describe_image_target(media_type: str) -> tuple[str, str]:
    """Return the kind (Manifest, Index) and schema (Docker, OCI) of an image target."""
    kind = "Unknown"
    if is_manifest_type(media_type):
        kind = "Manifest"
    elif media_type in (_DOCKER_MANIFEST_LIST, _OCI_INDEX):
        kind = "Index"

    schema = "Unknown"
    if "docker" in media_type:
        schema = "Docker"
    elif "oci" in media_type:
        schema = "OCI"
    return kind, schema


def parse_diff_ids(config_data: Union[bytes, str]) -> list[str]:
    """Return the rootfs diff IDs listed in an image config document."""
    document = json.loads(config_data)
    if document is None:
        return []
    if not isinstance(document, Mapping):
        raise ValueError(f"cannot decode {type(document).__name__} into an image config")
    rootfs = _get(document, "rootfs")
    if rootfs is not None and not isinstance(rootfs, Mapping):
        raise ValueError("image config rootfs is not an object")
    diff_ids = _get(rootfs, "diff_ids", [])
    if not isinstance(diff_ids, list) or not all(isinstance(item, str) for item in diff_ids):
        raise ValueError("image config diff_ids is not a list of strings")
    return list(diff_ids)


def _overlay_option(mounts: Iterable[Mount], prefix: str) -> Optional[str]:
    for mount in mounts:
        if mount.type != "overlay":
            continue
        for option in mount.options:
            if len(option) > len(prefix) and option.startswith(prefix):
                return option[len(prefix):]
    return None


def read_only_layer_paths(mounts: Iterable[Mount]) -> list[str]:
    """Return the overlay lowerdir paths of a writable snapshot, top first."""
    lowerdir = _overlay_option(mounts, "lowerdir=")
    return lowerdir.split(":") if lowerdir is not None else []


def rw_layer_path(mounts: Iterable[Mount]) -> str:
    """Return the overlay upperdir of a writable snapshot."""
    upperdir = _overlay_option(mounts, "upperdir=")
    if upperdir is None:
        raise ValueError("no upperdir found in mounts")
    return upperdir


def _stat(stat_snapshot: Optional[SnapshotStat], chain_id: str) -> Optional[tuple[int, int]]:
    if stat_snapshot is None:
        return None
    try:
        return stat_snapshot(chain_id)
    except Exception:
        return None


def build_image_layers(
    layers: Sequence[Mapping[str, Any]],
    diff_ids: Sequence[str],
    stat_snapshot: Optional[SnapshotStat] = None,
    ro_paths: Optional[Sequence[str]] = None,
) -> list[ImageLayer]:
    """Build layer records, base first, from manifest layer descriptors.

    ``layers`` are the manifest's descriptors (``mediaType``, ``digest``,
    ``size``); ``diff_ids`` the config's matching uncompressed digests.
    ``ro_paths`` are read-only layer paths ordered top first, as they appear
    in an overlay lowerdir.
    """
    if len(layers) != len(diff_ids):
        raise ValueError(
            f"layer count mismatch: manifest has {len(layers)} layers, "
            f"config has {len(diff_ids)} diff ids"
        )
    ro_paths = list(ro_paths or [])
    result = []
    for index, (descriptor, diff_id, chain_id) in enumerate(
        zip(layers, diff_ids, calculate_chain_ids(diff_ids))
    ):
        digest = str(_get(descriptor, "digest", ""))
        layer = ImageLayer(
            index=index,
            compressed_digest=digest,
            uncompressed_digest=diff_id,
            size=int(_get(descriptor, "size", 0)),
            compression_type=compression_type(str(_get(descriptor, "mediaType", ""))),
            content_path=content_path(digest),
            snapshot_key=chain_id,
        )
        usage = _stat(stat_snapshot, chain_id)
        if usage is not None:
            layer.snapshot_exists = True
            if index < len(ro_paths):
                layer.snapshot_path = ro_paths[len(ro_paths) - 1 - index]
            layer.usage_size, layer.usage_inodes = usage
        result.append(layer)
    return result