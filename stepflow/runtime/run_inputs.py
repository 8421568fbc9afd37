"""Run input normalization and ``{{input.<key>}}`` token substitution.

Run inputs are a flat str -> str mapping supplied when a run starts. Keys are
normalized (lowercase, separators collapsed to underscores, a few synonyms
canonicalized) so that ``Figma URL``, ``figma-link`` and ``figma_link_path``
all resolve to the same value.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

RunInputs = Dict[str, str]

INPUT_TOKEN_PATTERN = re.compile(r"\{\{\s*input\.([a-zA-Z0-9._-]+)\s*\}\}")

_KEY_SEPARATOR_RE = re.compile(r"[.\-\s]+")
_DUPLICATE_UNDERSCORE_RE = re.compile(r"_+")

_CANONICAL_TOKENS = {
    "url": "link",
    "urls": "links",
    "uri": "link",
    "uris": "links",
    "endpoint": "link",
    "endpoints": "links",
    "directory": "dir",
    "directories": "dirs",
    "folder": "dir",
    "folders": "dirs",
}
_LOCATION_SUFFIXES = {"path", "dir", "file"}
_SECRET_SUFFIXES = ("token", "key", "secret")
_SECRET_QUALIFIERS = {"api", "personal", "access", "private", "auth", "pat"}
_SENSITIVE_SUBSTRINGS = ("token", "secret", "password", "credential", "apikey", "api_key")


def normalize_run_input_key(raw: str) -> str:
    """Normalize a run input key for lookup and storage."""
    text = _KEY_SEPARATOR_RE.sub("_", (raw or "").strip().lower())
    text = _DUPLICATE_UNDERSCORE_RE.sub("_", text.strip("_"))
    tokens = [_CANONICAL_TOKENS.get(t, t) for t in text.split("_") if t]
    return "_".join(tokens)


def _key_variants(raw: str) -> Set[str]:
    normalized = normalize_run_input_key(raw)
    if not normalized:
        return set()

    variants = {normalized}
    tokens = normalized.split("_")
    if len(tokens) <= 1:
        return variants

    last = tokens[-1]
    if last in _LOCATION_SUFFIXES:
        variants.add("_".join(tokens[:-1]))
    else:
        variants.add("_".join(tokens + ["path"]))

    if last in _SECRET_SUFFIXES:
        compact = [t for i, t in enumerate(tokens) if i == len(tokens) - 1 or t not in _SECRET_QUALIFIERS]
        if len(compact) >= 2:
            variants.add("_".join(compact))
            for suffix in _SECRET_SUFFIXES:
                variants.add("_".join(compact[:-1] + [suffix]))

    return variants


def are_run_input_keys_equivalent(left: str, right: str) -> bool:
    return bool(_key_variants(left) & _key_variants(right))


def is_sensitive_run_input_key(raw: str) -> bool:
    normalized = normalize_run_input_key(raw)
    if not normalized:
        return False
    if normalized.endswith("_key"):
        return True
    return any(part in normalized for part in _SENSITIVE_SUBSTRINGS)


def _specificity(key: str) -> int:
    tokens = [t for t in normalize_run_input_key(key).split("_") if t]
    if not tokens:
        return 0
    score = min(len(tokens), 16)
    last = tokens[-1]
    if last == "path":
        score += 40
    elif last in ("dir", "file"):
        score += 30
    elif last in ("link", "links"):
        score += 20
    return score


def _preferred_key(left: str, right: str) -> str:
    if not left or left == right:
        return right or left
    if not right:
        return left
    left_score, right_score = _specificity(left), _specificity(right)
    if left_score != right_score:
        return left if left_score > right_score else right
    return min(left, right)


def get_run_input_value(run_inputs: Mapping[str, str], key_raw: str) -> Optional[str]:
    """Look up a run input by normalized key, then by equivalent keys."""
    key = normalize_run_input_key(key_raw)
    if not key:
        return None

    direct = run_inputs.get(key)
    if direct:
        return direct

    for existing_key, value in run_inputs.items():
        if existing_key == key or not value:
            continue
        if are_run_input_keys_equivalent(existing_key, key):
            return value
    return None


def is_truthy_run_input(run_inputs: Mapping[str, str], key_raw: str) -> bool:
    value = get_run_input_value(run_inputs, key_raw)
    if value is None:
        return False
    return value.strip().lower() not in ("", "0", "false", "no", "off")


def extract_input_keys(text: str) -> List[str]:
    """Return normalized keys of every ``{{input.x}}`` token in text."""
    keys: List[str] = []
    for match in INPUT_TOKEN_PATTERN.finditer(text or ""):
        key = normalize_run_input_key(match.group(1))
        if key and key not in keys:
            keys.append(key)
    return keys


def replace_input_tokens(text: str, run_inputs: Mapping[str, str]) -> str:
    """Substitute ``{{input.<key>}}`` tokens; missing keys become MISSING_INPUT:<key>."""
    if not text:
        return text

    def _replace(match: "re.Match[str]") -> str:
        key = normalize_run_input_key(match.group(1))
        value = get_run_input_value(run_inputs, key)
        return value if value else f"MISSING_INPUT:{key}"

    return INPUT_TOKEN_PATTERN.sub(_replace, text)


def _find_equivalent(existing_keys: Iterable[str], candidate: str) -> Optional[str]:
    for existing in existing_keys:
        if are_run_input_keys_equivalent(existing, candidate):
            return existing
    return None


def normalize_run_inputs(raw: Any) -> RunInputs:
    """Normalize a raw mapping into RunInputs.

    None values are dropped; among equivalent keys the most specific key name
    wins and the first non-empty value is kept.
    """
    if not isinstance(raw, Mapping):
        return {}

    entries = []
    for raw_key, raw_value in raw.items():
        key = normalize_run_input_key(str(raw_key))
        if key and raw_value is not None:
            entries.append((key, raw_value))
    entries.sort(key=lambda item: (-_specificity(item[0]), item[0]))

    result: RunInputs = {}
    for entry_key, raw_value in entries:
        equivalent = _find_equivalent(list(result), entry_key)
        key = entry_key if equivalent is None else _preferred_key(equivalent, entry_key)
        incoming = raw_value if isinstance(raw_value, str) else str(raw_value)

        if equivalent is not None and equivalent != key:
            result[key] = result.pop(equivalent)

        existing = result.get(key)
        if existing is None:
            result[key] = incoming
        elif incoming.strip() and not existing.strip():
            result[key] = incoming

    return result


def format_run_inputs_summary(run_inputs: Mapping[str, str]) -> str:
    """Render run inputs as a sorted bullet list with sensitive values redacted."""
    entries = sorted(
        (normalize_run_input_key(k), v) for k, v in run_inputs.items() if v and v.strip()
    )
    if not entries:
        return "None"
    return "\n".join(
        f"- {key}: {'[REDACTED]' if is_sensitive_run_input_key(key) else value}"
        for key, value in entries
    )
