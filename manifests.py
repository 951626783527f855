import json
import logging

from store import StoreError

logger = logging.getLogger("refresher")

# Medusa layout: [cluster]/[hostname]/[backup-name]/meta/manifest.json
MANIFEST_SUFFIX = "/meta/manifest.json"
MIN_MANIFEST_SEGMENTS = 4


class DecodeError(ValueError):
    """Manifest body is empty, malformed, or of an unknown shape."""


class PathError(ValueError):
    """Manifest key is too shallow to carry a cluster/host prefix."""


class DiscoveryError(RuntimeError):
    """A listing page could not be fetched; no manifest set is available."""


class Manifest:
    def __init__(self, key, objects):
        self.key = key
        self.objects = objects

    def __len__(self):
        return len(self.objects)

    def __repr__(self):
        return f"Manifest(key={self.key!r}, objects={len(self.objects)})"


def _object_paths(entries, where):
    if not isinstance(entries, list):
        raise DecodeError(f"'objects' in {where} is not a list")
    paths = []
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get('path'), str):
            raise DecodeError(f"object entry in {where} has no 'path': {entry!r}")
        paths.append(entry['path'])
    return paths


def parse_manifest(data, key=None):
    """
    Decodes a manifest document into a flat list of referenced paths.

    Two shapes are found in the field:
      {"objects": [{"path": ...}, ...]}
      [{"keyspace": ..., "objects": [{"path": ...}, ...]}, ...]
    The per-table form is flattened in record order, then in-record order.
    """
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecodeError(f"manifest is not valid UTF-8: {e}") from e

    if data is None or not data.strip():
        raise DecodeError("manifest is empty")

    try:
        document = json.loads(data)
    except json.JSONDecodeError as e:
        raise DecodeError(f"manifest is not valid JSON: {e}") from e

    if isinstance(document, dict):
        # Older flat shape. A mapping without 'objects' references nothing.
        objects = _object_paths(document.get('objects', []), "manifest")
    elif isinstance(document, list):
        objects = []
        for idx, record in enumerate(document):
            if not isinstance(record, dict):
                raise DecodeError(f"table entry #{idx} is not an object")
            objects.extend(_object_paths(record.get('objects', []), f"table entry #{idx}"))
    else:
        raise DecodeError(f"unsupported manifest shape: {type(document).__name__}")

    return Manifest(key, objects)


def resolve_hostname_path(manifest_key):
    """Returns the 'cluster/host/' prefix that owns the shared data directory."""
    parts = manifest_key.split('/')
    if len(parts) < MIN_MANIFEST_SEGMENTS:
        raise PathError(f"invalid manifest path: {manifest_key!r}")
    return f"{parts[0]}/{parts[1]}/"


def resolve_object_key(hostname_path, path):
    """
    Maps a manifest-referenced path onto its absolute storage key.
    Newer manifests already embed the cluster/host prefix; older ones are
    relative to it. The check is purely textual.
    """
    if path.startswith(hostname_path):
        return path
    return hostname_path + path


def find_manifests(store, cluster):
    """Finds every manifest.json under the cluster prefix of the store's bucket."""
    if not cluster:
        raise ValueError("cluster name is required")

    prefix = cluster + "/"
    manifests = set()
    scanned = 0

    try:
        for key in store.list_keys(prefix):
            scanned += 1
            # The shared data/ directory holds the bulk of the listing
            if key.endswith(MANIFEST_SUFFIX):
                manifests.add(key)
    except StoreError as e:
        raise DiscoveryError(f"failed to list s3://{store.bucket}/{prefix}: {e}") from e

    logger.debug("Scanned %d keys under s3://%s/%s, %d manifests", scanned, store.bucket, prefix, len(manifests))
    return sorted(manifests)
