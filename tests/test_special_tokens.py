"""
paged-genai :: Test Special Tokens

Source priority, formats of each config file, pad fallback and the
decode / encode derivation steps.

INL - 2025
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from paged_genai.core.special_tokens import (
    SpecialTokens, derive_ids, derive_strings, read_json_file, resolve_special_tokens,
)
from conftest import write_json


class TestPriority:
    def test_rt_info_beats_config(self, tmp_path):
        write_json(tmp_path / "config.json", {"eos_token_id": 2})
        tokens = resolve_special_tokens(str(tmp_path), {"eos_token_id": 7})
        assert tokens.eos_token_id == 7

    def test_config_beats_added_tokens_decoder(self, tmp_path):
        write_json(tmp_path / "config.json", {"eos_token_id": 2})
        write_json(tmp_path / "tokenizer_config.json", {
            "eos_token": "</s>",
            "added_tokens_decoder": {"9": {"content": "</s>", "special": True}},
        })
        tokens = resolve_special_tokens(str(tmp_path))
        assert tokens.eos_token_id == 2
        assert tokens.eos_token == "</s>"

    def test_special_tokens_map_beats_tokenizer_config(self, tmp_path):
        write_json(tmp_path / "special_tokens_map.json", {"bos_token": {"content": "<s>", "lstrip": False}})
        write_json(tmp_path / "tokenizer_config.json", {"bos_token": "<bos>", "eos_token": "</s>"})
        tokens = resolve_special_tokens(str(tmp_path))
        assert tokens.bos_token == "<s>"
        assert tokens.eos_token == "</s>"

    def test_no_directory(self):
        tokens = resolve_special_tokens(None, {"bos_token_id": 1})
        assert tokens.bos_token_id == 1
        assert tokens.eos_token_id == -1


class TestFormats:
    def test_list_ids_take_first(self, tmp_path):
        write_json(tmp_path / "config.json", {"eos_token_id": [2, 32000], "bos_token_id": None})
        tokens = resolve_special_tokens(str(tmp_path))
        assert tokens.eos_token_id == 2
        assert tokens.bos_token_id == -1

    def test_bool_is_not_an_id(self, tmp_path):
        write_json(tmp_path / "config.json", {"pad_token_id": False})
        assert resolve_special_tokens(str(tmp_path)).pad_token_id == -1

    def test_added_tokens_decoder_ids(self, tmp_path):
        write_json(tmp_path / "tokenizer_config.json", {
            "bos_token": {"content": "<s>"},
            "pad_token": "<pad>",
            "added_tokens_decoder": {
                "0": {"content": "<pad>"},
                "1": {"content": "<s>"},
                "5": {"content": "<extra>"},
            },
        })
        tokens = resolve_special_tokens(str(tmp_path))
        assert tokens.bos_token_id == 1
        assert tokens.pad_token_id == 0
        assert tokens.eos_token_id == -1

    def test_malformed_file_skipped(self, tmp_path):
        (tmp_path / "config.json").write_text("{not json")
        write_json(tmp_path / "tokenizer_config.json", {"eos_token": "</s>"})
        tokens = resolve_special_tokens(str(tmp_path))
        assert tokens.eos_token == "</s>"
        assert read_json_file(str(tmp_path / "config.json")) is None

    def test_non_object_file(self, tmp_path):
        write_json(tmp_path / "config.json", [1, 2])
        assert read_json_file(str(tmp_path / "config.json")) is None


class TestPadFallback:
    def test_pad_takes_eos(self, tmp_path):
        write_json(tmp_path / "config.json", {"eos_token_id": 2})
        write_json(tmp_path / "tokenizer_config.json", {"eos_token": "</s>"})
        tokens = resolve_special_tokens(str(tmp_path))
        assert tokens.pad_token_id == -1
        tokens.apply_pad_fallback()
        assert tokens.pad_token_id == 2
        assert tokens.pad_token == "</s>"

    def test_known_pad_kept(self):
        tokens = SpecialTokens(pad_token_id=0, eos_token_id=2, eos_token="</s>")
        tokens.apply_pad_fallback()
        assert tokens.pad_token_id == 0
        assert tokens.pad_token == ""

    def test_known_pad_string_keeps_its_own_id(self, tmp_path):
        write_json(tmp_path / "config.json", {"bos_token_id": 1, "eos_token_id": 2})
        write_json(tmp_path / "special_tokens_map.json", {"pad_token": {"content": "<pad>"}})
        tokens = resolve_special_tokens(str(tmp_path))
        tokens.apply_pad_fallback()
        assert (tokens.pad_token, tokens.pad_token_id) == ("<pad>", -1)
        derive_ids(tokens, {"<pad>": 0}.get)
        assert tokens.pad_token_id == 0

    def test_pad_equal_to_eos_takes_eos_id(self):
        tokens = SpecialTokens(pad_token="</s>", eos_token="</s>", eos_token_id=2)
        tokens.apply_pad_fallback()
        assert tokens.pad_token_id == 2


class TestDerivation:
    def test_fill_never_overwrites(self):
        tokens = SpecialTokens(bos_token_id=1)
        assert tokens.fill({"bos_token_id": 5, "eos_token_id": 2}) == ["eos_token_id"]
        assert tokens.bos_token_id == 1

    def test_strings_from_ids(self):
        tokens = SpecialTokens(bos_token_id=1, eos_token_id=2, eos_token="</s>")
        derive_strings(tokens, {1: "<s>", 2: "<eos>"}.get)
        assert tokens.bos_token == "<s>"
        assert tokens.eos_token == "</s>"

    def test_ids_from_strings(self):
        tokens = SpecialTokens(bos_token="<s>", eos_token="</s>", eos_token_id=2)
        derive_ids(tokens, lambda s: {"<s>": 1, "</s>": 9}[s])
        assert tokens.bos_token_id == 1
        assert tokens.eos_token_id == 2

    def test_unencodable_string(self):
        tokens = SpecialTokens(pad_token="<pad>")
        derive_ids(tokens, lambda s: None)
        assert tokens.pad_token_id == -1

    def test_complete(self):
        tokens = SpecialTokens(0, 1, 2, "<pad>", "<s>", "</s>")
        assert tokens.complete
        assert not SpecialTokens().complete
