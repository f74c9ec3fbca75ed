"""
Configuration fingerprint — the configHash that keys every run record.

Two configurations that differ only in key order hash the same. The
top-level botId is excluded: it names one attempt, not the configuration,
so regenerating an identical configuration under a new bot id is still a
duplicate.
"""
import hashlib
import json
from typing import Any, Mapping

_IGNORED_KEYS = frozenset({"botId"})


def canonical_json(configuration: Mapping[str, Any]) -> str:
    body = {k: v for k, v in configuration.items() if k not in _IGNORED_KEYS}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint(configuration: Mapping[str, Any]) -> str:
    return hashlib.md5(canonical_json(configuration).encode()).hexdigest()
