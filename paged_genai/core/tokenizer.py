"""
paged-genai :: Tokenizer

Text ↔ token ids through two compiled graphs (tokenizer, detokenizer),
plus chat-template rendering.

    tokenizer = Tokenizer("/models/llama")
    ids = tokenizer.encode("hello world", add_special_tokens=False).input_ids
    text = tokenizer.decode(ids[0].tolist())
    prompt = tokenizer.apply_chat_template([{"role": "user", "content": "hi"}], True)

Each direction has its own pool of infer requests, so encode/decode may be
called from many threads at once. Per-call options (add_special_tokens,
max_length, ...) are written into the acquired request's state variables,
and only when they differ from what that request already holds.

INL - 2025
"""

import os
import torch
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from paged_genai.core.backend import BackendContext, CompiledModel
from paged_genai.core.chat_template import ChatHistory, ChatTemplate, remap_and_patch, resolve_chat_template
from paged_genai.core.logging import get_logger
from paged_genai.core.request_queue import InferRequestQueue, PooledRequest
from paged_genai.core.special_tokens import (
    SpecialTokens, derive_ids, derive_strings, resolve_special_tokens,
)
from paged_genai.graph.model import ModelGraph
from paged_genai.graph.tokenizer_graphs import (
    ADD_SPECIAL_TOKENS, IS_MAX_LENGTH_SET, MAX_LENGTH, PAD_TO_MAX_LENGTH, SKIP_SPECIAL_TOKENS,
    TOKENIZERS_VERSION_KEY, load_tokenizer_graphs, make_add_special_tokens_stateful,
    make_padding_stateful, make_vocab_decoder_stateful, read_vocab_from_detokenizer_graph,
)

logger = get_logger("paged_genai.tokenizer")

STATE_FLAGS = (ADD_SPECIAL_TOKENS, SKIP_SPECIAL_TOKENS, MAX_LENGTH, PAD_TO_MAX_LENGTH, IS_MAX_LENGTH_SET)

WARMUP_PROMPT = "non empty string"
WARMUP_TOKENS = [1, 33, 199, 42, 42]
# the HF decoder takes u32 ids
MAX_TOKEN_ID = 2 ** 32 - 1


@dataclass
class TokenizedInputs:
    input_ids: torch.Tensor                        # (batch, seq) int64
    attention_mask: torch.Tensor                   # (batch, seq) int64
    token_type_ids: Optional[torch.Tensor] = None  # pair inputs only


@dataclass
class EncodeOptions:
    """None = not given; the request's compiled default applies."""
    add_special_tokens: Optional[bool] = None
    max_length: Optional[int] = None
    pad_to_max_length: Optional[bool] = None

    def __post_init__(self):
        for name in ("add_special_tokens", "pad_to_max_length"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, bool):
                raise ValueError(f"{name} must be a bool, got {value!r}")
        if self.max_length is not None:
            if isinstance(self.max_length, bool) or not isinstance(self.max_length, int) or self.max_length < 0:
                raise ValueError(f"max_length must be a non-negative int, got {self.max_length!r}")

    def state_values(self) -> Dict[str, Any]:
        return {
            ADD_SPECIAL_TOKENS: self.add_special_tokens,
            MAX_LENGTH: self.max_length,
            PAD_TO_MAX_LENGTH: self.pad_to_max_length,
            IS_MAX_LENGTH_SET: True if self.max_length is not None else None,
        }


@dataclass
class DecodeOptions:
    skip_special_tokens: Optional[bool] = None

    def __post_init__(self):
        if self.skip_special_tokens is not None and not isinstance(self.skip_special_tokens, bool):
            raise ValueError(f"skip_special_tokens must be a bool, got {self.skip_special_tokens!r}")

    def state_values(self) -> Dict[str, Any]:
        return {SKIP_SPECIAL_TOKENS: self.skip_special_tokens}


def _build_options(cls, options, kwargs: Dict[str, Any]):
    """Options object from an instance, a mapping and/or keyword arguments."""
    allowed = {f.name for f in fields(cls)}
    for key in kwargs:
        if key not in allowed:
            raise ValueError(f"unacceptable parameter key: {key}")
    if options is None:
        return cls(**kwargs)
    if isinstance(options, cls):
        return replace(options, **kwargs) if kwargs else options
    if isinstance(options, Mapping):
        merged = dict(options)
        merged.update(kwargs)
        for key in merged:
            if key not in allowed:
                raise ValueError(f"unacceptable parameter key: {key}")
        return cls(**merged)
    raise TypeError(f"options must be {cls.__name__} or a mapping, got {type(options).__name__}")


def _check_token_ids(line: Sequence[Any]):
    for token_id in line:
        if isinstance(token_id, bool) or not isinstance(token_id, int):
            raise TypeError(f"token ids must be ints, got {type(token_id).__name__}")
        if not 0 <= token_id <= MAX_TOKEN_ID:
            raise ValueError(f"token id out of range [0, {MAX_TOKEN_ID}]: {token_id}")


Prompts = Union[str, Sequence[str], Sequence[Tuple[str, str]]]


class Tokenizer:
    """
    Tokenizer / detokenizer session.

    Args:
        models_path: directory with tokenizer.json and the HF config files
        tokenizer_graph / detokenizer_graph: graphs to use instead of (or on top of) tokenizer.json
        context: BackendContext that compiles the graphs (default: a new one)
        properties: compile properties, e.g. {"num_requests": 4}
    """

    def __init__(
        self,
        models_path: Optional[str] = None,
        *,
        tokenizer_graph: Optional[ModelGraph] = None,
        detokenizer_graph: Optional[ModelGraph] = None,
        context: Optional[BackendContext] = None,
        properties: Optional[Dict[str, Any]] = None,
    ):
        if models_path is not None:
            models_path = str(models_path)
            if os.path.isfile(models_path):
                raise ValueError("'models_path' should be a path to a directory, not a file")
            if tokenizer_graph is None and detokenizer_graph is None:
                tokenizer_graph, detokenizer_graph = load_tokenizer_graphs(models_path)

        if tokenizer_graph is None and detokenizer_graph is None:
            raise RuntimeError(
                "Neither tokenizer nor detokenizer graphs were provided"
                + (f" (no tokenizer.json in {models_path})" if models_path else "")
            )

        self.models_path = models_path
        self.context = context or BackendContext()
        self._encode_queue: Optional[InferRequestQueue] = None
        self._decode_queue: Optional[InferRequestQueue] = None
        self._encode_outputs: set = set()
        self._pair_input = False
        self._vocab: List[str] = []

        # Runtime-togglable flags need a tokenizer graph that records its library version
        primary = tokenizer_graph if tokenizer_graph is not None else detokenizer_graph
        self._sync_flags = primary.has_rt_info(TOKENIZERS_VERSION_KEY)
        if not self._sync_flags:
            logger.warning("Tokenizer graph has no version info: encode/decode options are ignored")

        self._special = resolve_special_tokens(models_path, primary.rt_info)
        self._chat_template = resolve_chat_template(
            models_path, tokenizer_graph.rt_info if tokenizer_graph is not None else {}
        )
        self._compiled_chat_template: Optional[ChatTemplate] = None

        if tokenizer_graph is not None:
            make_add_special_tokens_stateful(tokenizer_graph)
            make_padding_stateful(tokenizer_graph)
            compiled = self.context.compile_model(tokenizer_graph, properties=properties)
            self._encode_queue = self._make_queue(compiled)
            self._encode_outputs = set(compiled.outputs)
            self._pair_input = len(compiled.inputs) > 1
            self.encode(WARMUP_PROMPT)

        if detokenizer_graph is not None:
            make_vocab_decoder_stateful(detokenizer_graph)
            compiled = self.context.compile_model(detokenizer_graph, properties=properties)
            self._decode_queue = self._make_queue(compiled)
            derive_strings(self._special, lambda token_id: self.decode([token_id], skip_special_tokens=False))
            self.decode(WARMUP_TOKENS)
            self._vocab = read_vocab_from_detokenizer_graph(detokenizer_graph)

        if self._encode_queue is not None:
            derive_ids(self._special, self._last_token_id)
        self._special.apply_pad_fallback()

        logger.info(
            f"Tokenizer ready: encode={self.supports_encode()} decode={self.supports_decode()} "
            f"pad={self._special.pad_token_id} bos={self._special.bos_token_id} "
            f"eos={self._special.eos_token_id} chat_template={bool(self._chat_template)}"
        )

    @classmethod
    def from_graphs(
        cls,
        tokenizer_graph: Optional[ModelGraph],
        detokenizer_graph: Optional[ModelGraph],
        context: Optional[BackendContext] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> "Tokenizer":
        return cls(
            tokenizer_graph=tokenizer_graph,
            detokenizer_graph=detokenizer_graph,
            context=context,
            properties=properties,
        )

    @staticmethod
    def _make_queue(compiled: CompiledModel) -> InferRequestQueue:
        return InferRequestQueue(compiled.optimal_number_of_infer_requests, compiled.create_infer_request)

    def _last_token_id(self, token: str) -> Optional[int]:
        ids = self.encode(token, add_special_tokens=False).input_ids
        if ids.numel() == 0:
            return None
        return int(ids[0, -1].item())

    # =====================================================================
    # State
    # =====================================================================

    def _sync_state(self, pooled: PooledRequest, values: Dict[str, Any]):
        """
        Bring the request's flag variables in line with `values`:
        a given value is written unless the request already holds it;
        an omitted one resets the variable if it was written before.
        """
        if not self._sync_flags:
            return
        for state in pooled.request.query_state():
            name = state.name
            if name not in STATE_FLAGS:
                continue
            value = values.get(name)
            if value is not None:
                if name not in pooled.state_flags or pooled.state_flags[name] != value:
                    state.set_state(value)
                    pooled.state_flags[name] = value
            elif name in pooled.state_flags:
                state.reset()
                del pooled.state_flags[name]

    # =====================================================================
    # Encode
    # =====================================================================

    def _require_encode(self):
        if self._encode_queue is None:
            raise RuntimeError("Tokenizer graph was not provided or not loaded. Tokenizer.encode is not available")

    def _require_decode(self):
        if self._decode_queue is None:
            raise RuntimeError("Detokenizer graph was not provided or not loaded. Tokenizer.decode is not available")

    def encode(
        self,
        prompts: Prompts,
        prompts_2: Optional[Sequence[str]] = None,
        options: Union[EncodeOptions, Mapping[str, Any], None] = None,
        **kwargs,
    ) -> TokenizedInputs:
        """
        Tokenize a string, a batch of strings, a batch of (first, second)
        pairs, or two batches (`prompts`, `prompts_2`) of equal length or
        where one has a single entry.
        """
        self._require_encode()
        opts = _build_options(EncodeOptions, options, kwargs)

        paired = False
        if isinstance(prompts, str):
            first, second = [prompts], []
        else:
            first = list(prompts)
            second = []
            if prompts_2 is None and first and all(isinstance(p, (tuple, list)) for p in first):
                if any(len(p) != 2 for p in first):
                    raise ValueError("Each prompt pair must have exactly two strings")
                second = [p[1] for p in first]
                first = [p[0] for p in first]
                paired = True
        if prompts_2 is not None:
            second = [prompts_2] if isinstance(prompts_2, str) else list(prompts_2)
            paired = True
        if paired:
            if not (len(first) == len(second) or len(first) == 1 or len(second) == 1):
                raise ValueError(
                    f"prompts and prompts_2 should be of the same size or one of them should be of size 1, "
                    f"got {len(first)} and {len(second)}"
                )
            if not self._pair_input:
                raise ValueError("Tokenizer graph does not accept paired inputs")

        with self._encode_queue.acquire() as pooled:
            self._sync_state(pooled, opts.state_values())
            request = pooled.request
            request.set_input_tensor(0, first)
            if self._pair_input:
                request.set_input_tensor(1, second)
            request.infer()

            result = TokenizedInputs(
                request.get_tensor("input_ids").clone(),
                request.get_tensor("attention_mask").clone(),
            )
            if paired and "token_type_ids" in self._encode_outputs:
                result.token_type_ids = request.get_tensor("token_type_ids").clone()
        return result

    # =====================================================================
    # Decode
    # =====================================================================

    def _run_decode(self, token_ids: torch.Tensor, lengths: torch.Tensor, opts: DecodeOptions) -> List[str]:
        with self._decode_queue.acquire() as pooled:
            self._sync_state(pooled, opts.state_values())
            pooled.request.set_input_tensor(0, token_ids)
            pooled.request.set_input_tensor(1, lengths)
            pooled.request.infer()
            return list(pooled.request.get_output_tensor())

    def decode(
        self,
        tokens: Union[Sequence[int], Sequence[Sequence[int]], torch.Tensor],
        options: Union[DecodeOptions, Mapping[str, Any], None] = None,
        **kwargs,
    ) -> Union[str, List[str]]:
        """
        List[int] → str. (batch, seq) int64 tensor or List[List[int]] → List[str].
        Rows of a list batch may differ in length.
        """
        self._require_decode()
        opts = _build_options(DecodeOptions, options, kwargs)

        if isinstance(tokens, torch.Tensor):
            if tokens.dtype != torch.int64:
                raise TypeError(f"tokens tensor element type should be int64, got {tokens.dtype}")
            if tokens.dim() != 2:
                raise ValueError(f"tokens tensor should be of rank 2 with shape [batch_size, seq_len], got {tuple(tokens.shape)}")
            if tokens.numel() and (int(tokens.min()) < 0 or int(tokens.max()) > MAX_TOKEN_ID):
                raise ValueError(f"token ids out of range [0, {MAX_TOKEN_ID}]")
            return self._run_decode(tokens, torch.zeros(0, dtype=torch.int64), opts)

        tokens = list(tokens)
        if tokens and isinstance(tokens[0], (list, tuple)):
            for line in tokens:
                if not isinstance(line, (list, tuple)):
                    raise TypeError(f"expected a list of token id lists, got a {type(line).__name__} row")
                _check_token_ids(line)
            lengths = [len(line) for line in tokens]
            max_len = max(lengths)
            pad_id = max(self._special.pad_token_id, 0)
            batch = torch.full((len(tokens), max_len), pad_id, dtype=torch.int64)
            for i, line in enumerate(tokens):
                if line:
                    batch[i, : len(line)] = torch.tensor(line, dtype=torch.int64)
            return self._run_decode(batch, torch.tensor(lengths, dtype=torch.int64), opts)

        _check_token_ids(tokens)
        batch = torch.tensor([tokens], dtype=torch.int64).reshape(1, len(tokens))
        return self._run_decode(batch, torch.tensor([len(tokens)], dtype=torch.int64), opts)[0]

    # =====================================================================
    # Chat template
    # =====================================================================

    def apply_chat_template(
        self,
        history: ChatHistory,
        add_generation_prompt: bool,
        chat_template: str = "",
    ) -> str:
        """
        Render `history` with the model's template, or with `chat_template`
        (remapped and patched first) when given.
        """
        if chat_template:
            template = ChatTemplate(remap_and_patch(chat_template))
        else:
            if self._compiled_chat_template is None:
                self._compiled_chat_template = ChatTemplate(self._chat_template)
            template = self._compiled_chat_template
        return template.apply(
            history,
            add_generation_prompt,
            bos_token=self._special.bos_token,
            eos_token=self._special.eos_token,
            pad_token=self._special.pad_token,
        )

    def set_chat_template(self, chat_template: str):
        self._chat_template = remap_and_patch(chat_template)
        self._compiled_chat_template = None

    def get_chat_template(self) -> str:
        return self._chat_template

    # =====================================================================
    # Getters
    # =====================================================================

    @property
    def special_tokens(self) -> SpecialTokens:
        return replace(self._special)

    def get_pad_token_id(self) -> int:
        return self._special.pad_token_id

    def get_bos_token_id(self) -> int:
        return self._special.bos_token_id

    def get_eos_token_id(self) -> int:
        return self._special.eos_token_id

    def get_pad_token(self) -> str:
        return self._special.pad_token

    def get_bos_token(self) -> str:
        return self._special.bos_token

    def get_eos_token(self) -> str:
        return self._special.eos_token

    def get_vocab_vector(self) -> List[str]:
        if not self._vocab:
            raise RuntimeError(
                "Tokenizer vocab is empty. Please check if the detokenizer graph was provided and loaded correctly."
            )
        return list(self._vocab)

    def get_vocab(self) -> Dict[str, int]:
        return {token: idx for idx, token in enumerate(self.get_vocab_vector())}

    def supports_encode(self) -> bool:
        return self._encode_queue is not None

    def supports_decode(self) -> bool:
        return self._decode_queue is not None
