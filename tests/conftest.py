"""
paged-genai :: Test Fixtures

A tiny word-level HF tokenizer written to a temp model directory, so the
tokenizer / detokenizer graphs run end to end without a download.

    <pad>=0 <s>=1 </s>=2 <unk>=3 hello=4 world=5 how=6 are=7 you=8 ...

INL - 2025
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tokenizers import Tokenizer as HFTokenizer
from tokenizers.models import WordLevel
from tokenizers.pre_tokenizers import Whitespace
from tokenizers.processors import TemplateProcessing

VOCAB = {
    "<pad>": 0, "<s>": 1, "</s>": 2, "<unk>": 3,
    "hello": 4, "world": 5, "how": 6, "are": 7, "you": 8,
    "fine": 9, "thanks": 10, "hi": 11,
}

CHATML = (
    "{% for message in messages %}"
    "{{ '<|im_start|>' + message['role'] + '\\n' + message['content'] + '<|im_end|>\\n' }}"
    "{% endfor %}"
    "{% if add_generation_prompt %}{{ '<|im_start|>assistant\\n' }}{% endif %}"
)


def make_hf_tokenizer() -> HFTokenizer:
    tok = HFTokenizer(WordLevel(vocab=dict(VOCAB), unk_token="<unk>"))
    tok.pre_tokenizer = Whitespace()
    tok.add_special_tokens(["<pad>", "<s>", "</s>", "<unk>"])
    tok.post_processor = TemplateProcessing(
        single="<s> $A </s>",
        pair="<s> $A </s> $B:1 </s>:1",
        special_tokens=[("<s>", 1), ("</s>", 2)],
    )
    return tok


def write_json(path, data):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f)


@pytest.fixture
def hf_tokenizer():
    return make_hf_tokenizer()


@pytest.fixture
def models_dir(tmp_path, hf_tokenizer):
    """tokenizer.json + config.json (ids) + tokenizer_config.json (strings, chat template)."""
    hf_tokenizer.save(str(tmp_path / "tokenizer.json"))
    write_json(tmp_path / "config.json", {"bos_token_id": 1, "eos_token_id": 2})
    write_json(tmp_path / "tokenizer_config.json", {
        "bos_token": "<s>",
        "eos_token": "</s>",
        "chat_template": CHATML,
    })
    return str(tmp_path)


@pytest.fixture
def context():
    from paged_genai.core.backend import BackendContext
    from paged_genai.core.config import RuntimeConfig
    return BackendContext(RuntimeConfig(num_requests=2))


@pytest.fixture
def tokenizer(models_dir, context):
    from paged_genai.core.tokenizer import Tokenizer
    return Tokenizer(models_dir, context=context)
