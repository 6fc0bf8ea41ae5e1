"""YAML manifests for weave.py.

A manifest names the source trees, highest priority first, and the
target, so an overlay can be rebuilt without retyping a long command
line:

    sources:
      - overlays/site
      - base
    target: out/composite

Relative paths are taken relative to the directory holding the manifest.
"""

import os

import yaml

_KEYS = frozenset({"sources", "target"})


class ManifestError(Exception):
    """The manifest could not be read or does not have the expected shape."""


def _resolve(base, path):
    path = os.path.expanduser(path)
    if os.path.isabs(path):
        return path
    return os.path.join(base, path)


def load_manifest(path):
    """Read *path* and return (sources, target) with paths resolved."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ManifestError(f"cannot read manifest '{path}': {e.strerror or e}") from e
    except yaml.YAMLError as e:
        raise ManifestError(f"invalid YAML in manifest '{path}': {e}") from e

    if not isinstance(data, dict):
        raise ManifestError(f"manifest '{path}' must be a mapping with 'sources' and 'target'")

    unknown = sorted(str(k) for k in data if k not in _KEYS)
    if unknown:
        raise ManifestError(f"manifest '{path}' has unknown keys: {', '.join(unknown)}")

    sources = data.get("sources")
    if (not isinstance(sources, list) or not sources
            or not all(isinstance(s, str) and s for s in sources)):
        raise ManifestError(f"manifest '{path}': 'sources' must be a non-empty list of paths")

    target = data.get("target")
    if not isinstance(target, str) or not target:
        raise ManifestError(f"manifest '{path}': 'target' must be a path")

    base = os.path.dirname(os.path.abspath(path))
    return [_resolve(base, s) for s in sources], _resolve(base, target)
