# dotformer/keys.py
import hashlib
import json
from pathlib import PurePosixPath
from typing import Any, Mapping

DEFAULT_FORMAT = "jpg"
KEY_PREFIX = "transformed"


def _canonical_value(value: Any) -> Any:
    """Render integral floats as ints so 100.0 and 100 hash alike."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def canonical_options(options: Mapping[str, Any]) -> str:
    """Serialize options as a compact, key-sorted JSON list of [key, value] pairs.

    - Drop options whose value is None
    - Sort remaining entries by key name
    - Encode without whitespace, keeping non-ASCII characters
    """
    entries = sorted(
        ([key, _canonical_value(value)] for key, value in options.items() if value is not None),
        key=lambda entry: entry[0],
    )
    return json.dumps(entries, separators=(",", ":"), ensure_ascii=False)


def options_hash(options: Mapping[str, Any]) -> str:
    """First 10 hex characters of the MD5 of the canonical options."""
    return hashlib.md5(canonical_options(options).encode("utf-8")).hexdigest()[:10]


def resolve_format(source_id: str, options: Mapping[str, Any]) -> str:
    """Output format: explicit option, else the source extension, else jpg."""
    requested = options.get("format")
    if requested:
        return str(requested)
    suffix = PurePosixPath(source_id).suffix
    return suffix[1:] if len(suffix) > 1 else DEFAULT_FORMAT


def derive_key(source_id: str, options: Mapping[str, Any]) -> str:
    """Derive the content-addressed object key for a transformation.

    Returns ``transformed/{base_name}_{options_hash}.{format}``.
    """
    base_name = PurePosixPath(source_id).stem
    return f"{KEY_PREFIX}/{base_name}_{options_hash(options)}.{resolve_format(source_id, options)}"
