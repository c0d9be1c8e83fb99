"""Persistence of trained model bundles.

A bundle is one JSON document holding the discriminant model and the
gene scaling factor table it was trained with. Python's JSON encoder
writes the shortest repr of each float, so weights and gsf values read
back bit-identical.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Union

from .. import __version__
from ..core.classification.model import ModelBundle
from ..errors import InputShapeError

PathLike = Union[str, Path]

BUNDLE_FORMAT = "cellstable.model_bundle"
BUNDLE_FORMAT_VERSION = 1


def bundle_to_document(bundle: ModelBundle) -> Dict[str, Any]:
    document = {
        "format": BUNDLE_FORMAT,
        "format_version": BUNDLE_FORMAT_VERSION,
        "cellstable_version": __version__,
    }
    document.update(bundle.to_dict())
    return document


def bundle_from_document(document: Dict[str, Any]) -> ModelBundle:
    if document.get("format") != BUNDLE_FORMAT:
        raise InputShapeError(f"Not a model bundle (format={document.get('format')!r})")
    version = document.get("format_version")
    if version != BUNDLE_FORMAT_VERSION:
        raise InputShapeError(f"Unsupported model bundle version {version}")
    return ModelBundle.from_dict(document)


def save_bundle(bundle: ModelBundle, path: PathLike) -> Path:
    """Write ``bundle`` as JSON; returns the path written."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(bundle_to_document(bundle), handle, indent=2, allow_nan=False)
    return path


def load_bundle(path: PathLike) -> ModelBundle:
    """Read a bundle written by ``save_bundle``."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model bundle not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        document = json.load(handle)
    return bundle_from_document(document)
