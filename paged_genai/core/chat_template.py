"""
paged-genai :: Chat Template

Finds the model's chat template, adapts it to Jinja2 and renders chat
histories into prompt strings.

Sources, first hit wins:
    tokenizer graph rt_info["chat_template"]   (string or {"default": ...})
    chat_template.json
    processor_config.json
    tokenizer_config.json                      ("chat_template": string or [{"name": "default", "template": ...}])
    chat_template.jinja

A found template is replaced by its known-good equivalent if it is in
CHAT_TEMPLATE_FALLBACK_MAP; otherwise the graph's simplified_chat_template
is preferred when present, and the result is patched.

INL - 2025
"""

import os
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from jinja2 import TemplateError
from jinja2.sandbox import ImmutableSandboxedEnvironment

from paged_genai.core.chat_template_fallback import CHAT_TEMPLATE_FALLBACK_MAP
from paged_genai.core.logging import get_logger
from paged_genai.core.special_tokens import read_json_file

logger = get_logger("paged_genai.chat_template")

ChatHistory = List[Dict[str, str]]

# Ordered literal replacements for HF template syntax Jinja2 does not know.
PATCHES = [
    ("{%- generation -%}", ""),
    ("{%- endgeneration -%}", ""),
    ("{% generation %}", ""),
    ("{% endgeneration %}", ""),
    ("messages[1:]", "slice(messages, 1)"),
]

NO_TEMPLATE_MSG = (
    "Chat template wasn't found. This may indicate that the model wasn't trained for chat scenario. "
    "Please add 'chat_template' to tokenizer_config.json to use the model in chat scenario."
)
RENDER_FAILED_MSG = (
    "Jinja2 failed to apply chat template. Possible solutions are\n"
    "* Provide a simplified chat template with set_chat_template().\n"
    "* Skip the chat template and format the prompt manually before tokenizing. "
    "For example: <|user|>\\n{prompt}</s>\\n<|assistant|>\\n\n"
    "Jinja2 error: "
)
EMPTY_RESULT_MSG = (
    "Applied chat template resulted in an empty string. "
    "Please check the chat template or format the prompt manually. "
    "For example: <start_of_turn>user{user_prompt}<end_of_turn><start_of_turn>model"
)


# =========================================================================
# Remap / patch
# =========================================================================

def remap_template(chat_template: str) -> Optional[str]:
    return CHAT_TEMPLATE_FALLBACK_MAP.get(chat_template)


def patch_template(chat_template: str) -> str:
    for old, new in PATCHES:
        chat_template = chat_template.replace(old, new)
    return chat_template


def remap_and_patch(chat_template: str) -> str:
    """Known-good replacement if there is one, else the patched template."""
    fallback = remap_template(chat_template)
    if fallback is not None:
        return fallback
    return patch_template(chat_template)


# =========================================================================
# Sources
# =========================================================================

def from_rt_info(rt_info: Dict[str, Any]) -> Optional[str]:
    if "chat_template" not in rt_info:
        return None
    value = rt_info["chat_template"]
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping) and isinstance(value.get("default"), str):
        return value["default"]
    logger.warning(f"Unsupported type for 'chat_template' in tokenizer rt_info: {type(value).__name__}")
    return None


def from_config_file(path: str) -> Optional[str]:
    data = read_json_file(path)
    if data is None or "chat_template" not in data:
        return None
    value = data["chat_template"]
    if isinstance(value, str):
        return value
    # [{"name": "default", "template": "..."}], e.g. Cohere command-r
    if isinstance(value, list):
        for item in value:
            if isinstance(item, Mapping) and item.get("name") == "default" and isinstance(item.get("template"), str):
                return item["template"]
    logger.warning(
        f"Unsupported chat_template format in file: {path}. "
        "Supported formats: string or array of objects with 'name' and 'template' fields."
    )
    return None


def from_jinja_file(path: str) -> Optional[str]:
    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _resolvers(models_path: Optional[str], rt_info: Dict[str, Any]) -> List[Callable[[], Optional[str]]]:
    resolvers = [lambda: from_rt_info(rt_info)]
    if models_path:
        for name in ("chat_template.json", "processor_config.json", "tokenizer_config.json"):
            resolvers.append(lambda p=os.path.join(models_path, name): from_config_file(p))
        resolvers.append(lambda: from_jinja_file(os.path.join(models_path, "chat_template.jinja")))
    return resolvers


def resolve_chat_template(models_path: Optional[str], rt_info: Optional[Dict[str, Any]] = None) -> str:
    """Resolved, remapped and patched template; "" if the model has none."""
    rt_info = rt_info or {}
    template = ""
    for resolver in _resolvers(models_path, rt_info):
        found = resolver()
        if found:
            template = found
            break

    fallback = remap_template(template)
    if fallback is not None:
        logger.info("Chat template replaced by its known-good equivalent")
        return fallback
    simplified = rt_info.get("simplified_chat_template")
    if isinstance(simplified, str) and simplified:
        template = simplified
    return patch_template(template)


# =========================================================================
# Rendering
# =========================================================================

def _slice(messages: Sequence, start: int) -> list:
    return list(messages)[start:]


def _raise_exception(message: str):
    raise TemplateError(message)


def _environment() -> ImmutableSandboxedEnvironment:
    env = ImmutableSandboxedEnvironment(
        trim_blocks=True,
        lstrip_blocks=True,
        extensions=["jinja2.ext.loopcontrols"],
    )
    env.globals["slice"] = _slice
    env.globals["raise_exception"] = _raise_exception
    return env


def _messages(history: ChatHistory) -> ChatHistory:
    messages = []
    for i, message in enumerate(history):
        if not isinstance(message, Mapping) or "role" not in message or "content" not in message:
            raise ValueError(f"history[{i}] must have 'role' and 'content', got {message!r}")
        messages.append({"role": message["role"], "content": message["content"]})
    return messages


class ChatTemplate:
    """
    A patched template string, compiled once.

        tpl = ChatTemplate(template)
        tpl.apply([{"role": "user", "content": "hi"}], bos_token="<s>")
    """

    def __init__(self, template_str: str):
        if not template_str:
            raise RuntimeError(NO_TEMPLATE_MSG)
        self.source = template_str
        try:
            self.template = _environment().from_string(template_str)
        except TemplateError as e:
            raise RuntimeError(RENDER_FAILED_MSG + str(e)) from e

    def apply(
        self,
        history: ChatHistory,
        add_generation_prompt: bool = True,
        bos_token: str = "",
        eos_token: str = "",
        pad_token: str = "",
    ) -> str:
        try:
            result = self.template.render(
                messages=_messages(history),
                bos_token=bos_token,
                eos_token=eos_token,
                pad_token=pad_token,
                add_generation_prompt=add_generation_prompt,
            )
        except (TemplateError, TypeError) as e:
            raise RuntimeError(RENDER_FAILED_MSG + str(e)) from e
        if not result:
            raise RuntimeError(EMPTY_RESULT_MSG)
        return result

    @staticmethod
    def from_file(path: str) -> "ChatTemplate":
        """Load, remap and patch a .jinja file."""
        with open(path, "r", encoding="utf-8") as f:
            return ChatTemplate(remap_and_patch(f.read()))
