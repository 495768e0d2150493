"""
paged-genai :: Special Tokens

Resolves pad / bos / eos token ids and strings. Sources are tried from the
most to the least authoritative; a value, once known, is never replaced.

    1. tokenizer graph rt_info        (ids)
    2. config.json                    (ids)
    3. special_tokens_map.json        (strings, {"bos_token": {"content": ...}})
    4. tokenizer_config.json          (strings, flat or nested, and ids via added_tokens_decoder)
    5. detokenizer: decode(id)        (strings)
    6. tokenizer: encode(string)[-1]  (ids)

Steps 5 and 6 need compiled graphs and run from the Tokenizer, which then
applies the pad fallback (unknown pad takes eos).

INL - 2025
"""

import json
import os
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, List, Optional

from paged_genai.core.logging import get_logger

logger = get_logger("paged_genai.special_tokens")

KINDS = ("pad", "bos", "eos")

Found = Optional[Dict[str, Any]]


@dataclass
class SpecialTokens:
    """-1 / "" mean unknown."""
    pad_token_id: int = -1
    bos_token_id: int = -1
    eos_token_id: int = -1
    pad_token: str = ""
    bos_token: str = ""
    eos_token: str = ""

    def is_known(self, name: str) -> bool:
        value = getattr(self, name)
        return value != -1 if name.endswith("_id") else value != ""

    def fill(self, found: Found) -> List[str]:
        """Set the unknown fields present in `found`. Returns the names set."""
        filled = []
        for name, value in (found or {}).items():
            if value is None or self.is_known(name):
                continue
            setattr(self, name, value)
            if self.is_known(name):
                filled.append(name)
        return filled

    @property
    def complete(self) -> bool:
        return all(self.is_known(f.name) for f in fields(self))

    def apply_pad_fallback(self):
        """
        Unknown pad takes eos. A pad string that is known and differs from
        eos keeps its own identity, even without an id.
        """
        if not self.pad_token and self.eos_token and self.pad_token_id in (-1, self.eos_token_id):
            self.pad_token = self.eos_token
        if self.pad_token_id == -1 and self.eos_token_id != -1 and self.pad_token in ("", self.eos_token):
            self.pad_token_id = self.eos_token_id


def read_json_file(path: str) -> Optional[dict]:
    if not os.path.exists(path):
        logger.debug(f"{os.path.basename(path)} not found, skipped")
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"{path}: expected a JSON object, got {type(data).__name__}")
        return None
    return data


def _as_id(value) -> Optional[int]:
    # eos_token_id may be a list in config.json; the first entry is the primary one
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _as_str(value) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("content"), str):
        return value["content"]
    return None


# =========================================================================
# Resolvers: (models_path, known) → partial fields or None
# =========================================================================

def from_rt_info(rt_info: Dict[str, Any]) -> Found:
    return {f"{k}_token_id": _as_id(rt_info.get(f"{k}_token_id")) for k in KINDS}


def from_config_json(models_path: str, known: SpecialTokens) -> Found:
    data = read_json_file(os.path.join(models_path, "config.json"))
    if data is None:
        return None
    return {f"{k}_token_id": _as_id(data.get(f"{k}_token_id")) for k in KINDS}


def from_special_tokens_map(models_path: str, known: SpecialTokens) -> Found:
    data = read_json_file(os.path.join(models_path, "special_tokens_map.json"))
    if data is None:
        return None
    return {f"{k}_token": _as_str(data.get(f"{k}_token")) for k in KINDS}


def from_tokenizer_config(models_path: str, known: SpecialTokens) -> Found:
    data = read_json_file(os.path.join(models_path, "tokenizer_config.json"))
    if data is None:
        return None

    found: Dict[str, Any] = {f"{k}_token": _as_str(data.get(f"{k}_token")) for k in KINDS}

    # {"added_tokens_decoder": {"0": {"content": "<pad>"}}}, matched on the strings known so far
    decoder = data.get("added_tokens_decoder")
    if not isinstance(decoder, dict):
        return found
    strings = {k: getattr(known, f"{k}_token") or found[f"{k}_token"] for k in KINDS}
    for key, entry in decoder.items():
        content = _as_str(entry)
        if content is None or not key.lstrip("-").isdigit():
            continue
        for kind in KINDS:
            if strings[kind] and content == strings[kind] and f"{kind}_token_id" not in found:
                found[f"{kind}_token_id"] = int(key)
    return found


FILE_RESOLVERS: List[Callable[[str, SpecialTokens], Found]] = [
    from_config_json,
    from_special_tokens_map,
    from_tokenizer_config,
]


def resolve_special_tokens(models_path: Optional[str], rt_info: Optional[Dict[str, Any]] = None) -> SpecialTokens:
    """Ids and strings from rt_info and the model directory's config files."""
    tokens = SpecialTokens()
    tokens.fill(from_rt_info(rt_info or {}))
    if models_path:
        for resolver in FILE_RESOLVERS:
            if tokens.complete:
                break
            filled = tokens.fill(resolver(models_path, tokens))
            if filled:
                logger.debug(f"{resolver.__name__}: {', '.join(filled)}")
    return tokens


def derive_strings(tokens: SpecialTokens, decode_one: Callable[[int], str]):
    """Known id, unknown string: the string is what the id decodes to."""
    for kind in KINDS:
        token_id = getattr(tokens, f"{kind}_token_id")
        if token_id != -1 and not getattr(tokens, f"{kind}_token"):
            tokens.fill({f"{kind}_token": decode_one(token_id)})


def derive_ids(tokens: SpecialTokens, encode_last: Callable[[str], Optional[int]]):
    """Known string, unknown id: the id is the last one the string encodes to."""
    for kind in KINDS:
        token = getattr(tokens, f"{kind}_token")
        if token and getattr(tokens, f"{kind}_token_id") == -1:
            tokens.fill({f"{kind}_token_id": encode_last(token)})
