"""
paged-genai :: Test Chat Template

Tests for:
  - Source resolution order and file formats
  - Known-good remapping and HF syntax patches
  - Rendering and its error cases

INL - 2025
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from paged_genai.core.chat_template import (
    ChatTemplate, from_config_file, patch_template, remap_and_patch, resolve_chat_template,
)
from paged_genai.core.chat_template_fallback import CHAT_TEMPLATE_FALLBACK_MAP
from conftest import CHATML, write_json

USER_HI = [{"role": "user", "content": "hi"}]


# =========================================================================
# Resolution
# =========================================================================

class TestResolve:
    def test_none_found(self, tmp_path):
        assert resolve_chat_template(str(tmp_path), {}) == ""
        assert resolve_chat_template(None) == ""

    def test_rt_info_first(self, tmp_path):
        write_json(tmp_path / "tokenizer_config.json", {"chat_template": "from file"})
        assert resolve_chat_template(str(tmp_path), {"chat_template": "from graph"}) == "from graph"

    def test_rt_info_default_entry(self):
        assert resolve_chat_template(None, {"chat_template": {"default": "A", "tool_use": "B"}}) == "A"

    def test_file_order(self, tmp_path):
        write_json(tmp_path / "tokenizer_config.json", {"chat_template": "tokenizer_config"})
        assert resolve_chat_template(str(tmp_path)) == "tokenizer_config"
        write_json(tmp_path / "processor_config.json", {"chat_template": "processor_config"})
        assert resolve_chat_template(str(tmp_path)) == "processor_config"
        write_json(tmp_path / "chat_template.json", {"chat_template": "chat_template"})
        assert resolve_chat_template(str(tmp_path)) == "chat_template"

    def test_jinja_file_last(self, tmp_path):
        (tmp_path / "chat_template.jinja").write_text("{{ messages[0]['content'] }}")
        write_json(tmp_path / "tokenizer_config.json", {"bos_token": "<s>"})
        assert resolve_chat_template(str(tmp_path)) == "{{ messages[0]['content'] }}"

    def test_list_format(self, tmp_path):
        write_json(tmp_path / "tokenizer_config.json", {"chat_template": [
            {"name": "tool_use", "template": "tools"},
            {"name": "default", "template": "default"},
        ]})
        assert from_config_file(str(tmp_path / "tokenizer_config.json")) == "default"

    def test_unsupported_format(self, tmp_path):
        write_json(tmp_path / "tokenizer_config.json", {"chat_template": {"default": "x"}})
        assert from_config_file(str(tmp_path / "tokenizer_config.json")) is None

    def test_simplified_template_preferred(self):
        rt_info = {"chat_template": "{% generation %}original", "simplified_chat_template": "simple"}
        assert resolve_chat_template(None, rt_info) == "simple"

    def test_remap_beats_simplified(self):
        original, fallback = next(iter(CHAT_TEMPLATE_FALLBACK_MAP.items()))
        rt_info = {"chat_template": original, "simplified_chat_template": "simple"}
        assert resolve_chat_template(None, rt_info) == fallback


# =========================================================================
# Remap / patch
# =========================================================================

class TestPatch:
    def test_generation_markers_removed(self):
        template = "{%- generation -%}a{%- endgeneration -%}{% generation %}b{% endgeneration %}"
        assert patch_template(template) == "ab"

    def test_messages_slice(self):
        assert patch_template("{% for m in messages[1:] %}") == "{% for m in slice(messages, 1) %}"

    def test_remap_bypasses_patching(self):
        for original, fallback in CHAT_TEMPLATE_FALLBACK_MAP.items():
            assert remap_and_patch(original) == fallback

    def test_fallbacks_render(self):
        chatml, llama2 = list(CHAT_TEMPLATE_FALLBACK_MAP.values())
        assert ChatTemplate(chatml).apply(USER_HI) == "<|im_start|>user\nhi<|im_end|>\n<|im_start|>assistant\n"

        history = [{"role": "system", "content": "be brief"}, {"role": "user", "content": " hi "}]
        prompt = ChatTemplate(llama2).apply(history, bos_token="<s>", eos_token="</s>")
        assert prompt == "<s>[INST] <<SYS>>\nbe brief\n<</SYS>>\n\nhi [/INST]"


# =========================================================================
# Rendering
# =========================================================================

class TestRender:
    def test_chatml(self):
        assert ChatTemplate(CHATML).apply(USER_HI, add_generation_prompt=False) == "<|im_start|>user\nhi<|im_end|>\n"

    def test_slice_and_none_checks(self):
        template = remap_and_patch(
            "{% if system is not none %}{{ system }}{% endif %}"
            "{% for m in messages[1:] %}{{ m['content'] }}|{% endfor %}"
        )
        history = [{"role": "system", "content": "a"}, {"role": "user", "content": "b"}, {"role": "assistant", "content": "c"}]
        assert ChatTemplate(template).apply(history) == "b|c|"

    def test_special_tokens_passed(self):
        template = ChatTemplate("{{ bos_token }}{{ messages[0]['content'] }}{{ eos_token }}{{ pad_token }}")
        assert template.apply(USER_HI, bos_token="<s>", eos_token="</s>", pad_token="<pad>") == "<s>hi</s><pad>"

    def test_no_template(self):
        with pytest.raises(RuntimeError, match="Chat template wasn't found"):
            ChatTemplate("")

    def test_syntax_error(self):
        with pytest.raises(RuntimeError, match="Jinja2 error"):
            ChatTemplate("{% for m in messages %}")

    def test_empty_result(self):
        with pytest.raises(RuntimeError, match="empty string"):
            ChatTemplate("{% if false %}x{% endif %}").apply(USER_HI)

    def test_raise_exception(self):
        template = ChatTemplate("{{ raise_exception('roles must alternate') }}")
        with pytest.raises(RuntimeError, match="roles must alternate"):
            template.apply(USER_HI)

    def test_missing_content(self):
        with pytest.raises(ValueError):
            ChatTemplate(CHATML).apply([{"role": "user"}])

    def test_sandboxed(self):
        template = ChatTemplate("{{ messages.append({'role': 'x'}) }}")
        with pytest.raises(RuntimeError):
            template.apply(USER_HI)

    def test_from_file(self, tmp_path):
        path = tmp_path / "template.jinja"
        path.write_text("{% generation %}{{ messages[0]['content'] }}{% endgeneration %}")
        assert ChatTemplate.from_file(str(path)).apply(USER_HI) == "hi"
