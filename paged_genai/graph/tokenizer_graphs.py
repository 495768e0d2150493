"""
paged-genai :: Tokenizer Graphs

Tokenizer and detokenizer as graphs over a HuggingFace fast tokenizer
(tokenizers library), so they compile and pool like any other model.

Tokenizer graph:
    string_input [, string_input_2] → StringTokenize → input_ids, attention_mask [, token_type_ids]

Detokenizer graph:
    token_ids, sequence_lengths → VocabDecode → string_output

The make_*_stateful passes turn the compiled-in flags into state
variables, so they can be toggled per infer request without recompiling:

    add_special_tokens   bool   (default True)
    max_length           int32  (default -1)
    pad_to_max_length    bool   (default False)
    is_max_length_set    bool   (default False)
    skip_special_tokens  bool   (default True)

INL - 2025
"""

import os
import torch
from typing import List, Optional, Tuple

from paged_genai.graph.model import STRING, ModelGraph, Node, Parameter, PartialShape, TensorSpec, Variable
from paged_genai.graph.ops import OpDef, register_op
from paged_genai.core.logging import get_logger

logger = get_logger("paged_genai.graph")

TOKENIZER_INPUT = "string_input"
TOKENIZER_PAIR_INPUT = "string_input_2"
DETOKENIZER_INPUT = "token_ids"
SEQUENCE_LENGTHS_INPUT = "sequence_lengths"

ADD_SPECIAL_TOKENS = "add_special_tokens"
SKIP_SPECIAL_TOKENS = "skip_special_tokens"
MAX_LENGTH = "max_length"
PAD_TO_MAX_LENGTH = "pad_to_max_length"
IS_MAX_LENGTH_SET = "is_max_length_set"

# Present in rt_info of graphs whose flags may be toggled at run time.
TOKENIZERS_VERSION_KEY = "tokenizers_version"


def _flag(node: Node, values: dict, name: str, default):
    """Current value of a (possibly stateful) flag of a tokenizer node."""
    source = node.attrs.get("flag_inputs", {}).get(name)
    if source is None:
        return node.attrs.get(name, default)
    value = values[source]
    return value.item() if isinstance(value, torch.Tensor) else value


@register_op
class StringTokenize(OpDef):
    """Batch of strings (or string pairs) → padded id / mask tensors."""

    op_type = "StringTokenize"
    evaluable = True

    def infer(self, graph, node, inputs):
        for spec in inputs[: 2 if node.attrs.get("pair_input") else 1]:
            if spec.element_type not in (STRING, None):
                raise ValueError(f"string input expected, got {spec.element_type}")
        ids = TensorSpec(torch.int64, PartialShape([None, None]))
        return [ids for _ in node.outputs]

    def evaluate(self, node, inputs, request):
        values = dict(zip(node.inputs, inputs))
        tokenizer = node.attrs["tokenizer"]

        first = list(values[node.inputs[0]])
        second = list(values[node.inputs[1]]) if node.attrs.get("pair_input") else []

        add_special_tokens = bool(_flag(node, values, ADD_SPECIAL_TOKENS, True))
        is_max_length_set = bool(_flag(node, values, IS_MAX_LENGTH_SET, False))
        max_length = int(_flag(node, values, MAX_LENGTH, -1))
        pad_to_max_length = bool(_flag(node, values, PAD_TO_MAX_LENGTH, False))

        if second:
            # Size-1 side broadcasts against the other
            if len(first) == 1 and len(second) > 1:
                first = first * len(second)
            elif len(second) == 1 and len(first) > 1:
                second = second * len(first)
            encodings = tokenizer.encode_batch(list(zip(first, second)), add_special_tokens=add_special_tokens)
        else:
            encodings = tokenizer.encode_batch(first, add_special_tokens=add_special_tokens)

        rows = [list(e.ids) for e in encodings]
        type_rows = [list(e.type_ids) for e in encodings]
        if is_max_length_set and max_length >= 0:
            rows = [r[:max_length] for r in rows]
            type_rows = [r[:max_length] for r in type_rows]

        width = max((len(r) for r in rows), default=0)
        if pad_to_max_length and is_max_length_set and max_length >= 0:
            width = max_length

        pad_id = node.attrs.get("pad_token_id", 0)
        input_ids = torch.full((len(rows), width), pad_id, dtype=torch.int64)
        attention_mask = torch.zeros((len(rows), width), dtype=torch.int64)
        token_type_ids = torch.zeros((len(rows), width), dtype=torch.int64)
        for i, (row, types) in enumerate(zip(rows, type_rows)):
            n = len(row)
            if n:
                input_ids[i, :n] = torch.tensor(row, dtype=torch.int64)
                attention_mask[i, :n] = 1
                token_type_ids[i, :n] = torch.tensor(types, dtype=torch.int64)

        out = [input_ids, attention_mask]
        if len(node.outputs) == 3:
            out.append(token_type_ids)
        return out


@register_op
class VocabDecode(OpDef):
    """(batch, seq) int64 ids → one string per row, each row cut to its length."""

    op_type = "VocabDecode"
    evaluable = True

    def infer(self, graph, node, inputs):
        ids = inputs[0]
        if ids.element_type not in (torch.int64, None):
            raise ValueError(f"token ids must be int64, got {ids.element_type}")
        if ids.shape.rank is not None and ids.shape.rank != 2:
            raise ValueError(f"token ids must have rank 2, got {ids.shape}")
        return [TensorSpec(STRING, PartialShape([ids.shape[0]]))]

    def evaluate(self, node, inputs, request):
        values = dict(zip(node.inputs, inputs))
        tokenizer = node.attrs["tokenizer"]
        token_ids = values[node.inputs[0]]
        skip_special_tokens = bool(_flag(node, values, SKIP_SPECIAL_TOKENS, True))

        rows = token_ids.tolist()
        lengths = values.get(SEQUENCE_LENGTHS_INPUT)
        if lengths is not None and lengths.numel() == len(rows):
            rows = [row[: int(n)] for row, n in zip(rows, lengths.tolist())]
        return [tokenizer.decode_batch(rows, skip_special_tokens=skip_special_tokens)]


# =========================================================================
# Builders
# =========================================================================

def _pad_id_of(hf_tokenizer, rt_info: dict) -> int:
    padding = hf_tokenizer.padding
    if padding and padding.get("pad_id") is not None:
        return int(padding["pad_id"])
    pad_id = rt_info.get("pad_token_id", 0)
    return pad_id if isinstance(pad_id, int) and pad_id >= 0 else 0


def build_tokenizer_graph(
    hf_tokenizer,
    pair_input: bool = True,
    rt_info: Optional[dict] = None,
    pad_token_id: Optional[int] = None,
) -> ModelGraph:
    """Wrap a tokenizers.Tokenizer into a tokenizer graph. pad_token_id fills padded rows."""
    graph = ModelGraph("tokenizer")
    graph.rt_info.update(rt_info or {})

    inputs = [TOKENIZER_INPUT]
    graph.add_parameter(Parameter(TOKENIZER_INPUT, STRING, [None]))
    outputs = ["input_ids", "attention_mask"]
    if pair_input:
        inputs.append(TOKENIZER_PAIR_INPUT)
        graph.add_parameter(Parameter(TOKENIZER_PAIR_INPUT, STRING, [None]))
        outputs.append("token_type_ids")

    graph.add_node(Node(
        "tokenize", "StringTokenize", inputs, outputs,
        {
            "tokenizer": hf_tokenizer,
            "pair_input": pair_input,
            "pad_token_id": _pad_id_of(hf_tokenizer, graph.rt_info) if pad_token_id is None else pad_token_id,
        },
    ))
    for name in outputs:
        graph.add_result(name)
    return graph


def build_detokenizer_graph(hf_tokenizer, rt_info: Optional[dict] = None) -> ModelGraph:
    """Wrap a tokenizers.Tokenizer into a detokenizer graph."""
    graph = ModelGraph("detokenizer")
    graph.rt_info.update(rt_info or {})
    graph.add_parameter(Parameter(DETOKENIZER_INPUT, torch.int64, [None, None]))
    graph.add_parameter(Parameter(SEQUENCE_LENGTHS_INPUT, torch.int64, [None]))
    graph.add_node(Node(
        "detokenize", "VocabDecode", [DETOKENIZER_INPUT, SEQUENCE_LENGTHS_INPUT], ["string_output"],
        {"tokenizer": hf_tokenizer},
    ))
    graph.add_result("string_output")
    return graph


# =========================================================================
# Stateful passes
# =========================================================================

def _make_flag_stateful(graph: ModelGraph, op_type: str, flag: str, dtype: torch.dtype, default) -> bool:
    """
    Route `flag` of every `op_type` node through a state variable.
    Returns False if the graph has no such node or the flag is already stateful.
    """
    targets = [n for n in graph.nodes if n.op_type == op_type]
    if not targets or graph.has_variable(flag):
        return False

    graph.add_variable(Variable(flag, dtype, [], initial_value=torch.tensor(default, dtype=dtype)))
    read = f"{flag}/read"
    graph.add_node(Node(read, "ReadValue", [], [read], {"variable_id": flag}), index=0)
    for node in targets:
        node.inputs.append(read)
        node.attrs.setdefault("flag_inputs", {})[flag] = read
    return True


def make_add_special_tokens_stateful(graph: ModelGraph) -> bool:
    return _make_flag_stateful(graph, "StringTokenize", ADD_SPECIAL_TOKENS, torch.bool, True)


def make_padding_stateful(graph: ModelGraph) -> bool:
    changed = _make_flag_stateful(graph, "StringTokenize", MAX_LENGTH, torch.int32, -1)
    changed |= _make_flag_stateful(graph, "StringTokenize", PAD_TO_MAX_LENGTH, torch.bool, False)
    changed |= _make_flag_stateful(graph, "StringTokenize", IS_MAX_LENGTH_SET, torch.bool, False)
    return changed


def make_vocab_decoder_stateful(graph: ModelGraph) -> bool:
    return _make_flag_stateful(graph, "VocabDecode", SKIP_SPECIAL_TOKENS, torch.bool, True)


# =========================================================================
# Vocab / loading
# =========================================================================

def read_vocab_from_detokenizer_graph(graph: ModelGraph) -> List[str]:
    """Vocab ordered by token id, or [] if the graph has no VocabDecode node."""
    decoders = [n for n in graph.nodes if n.op_type == "VocabDecode"]
    if not decoders:
        return []
    vocab = decoders[-1].attrs["tokenizer"].get_vocab(with_added_tokens=True)
    if not vocab:
        return []
    vector = [""] * (max(vocab.values()) + 1)
    for token, idx in vocab.items():
        vector[idx] = token
    return vector


def load_tokenizer_graphs(models_path: str) -> Tuple[Optional[ModelGraph], Optional[ModelGraph]]:
    """
    Build both graphs from <models_path>/tokenizer.json.
    Returns (None, None) if the file is missing.
    """
    from tokenizers import Tokenizer as HFTokenizer
    import tokenizers

    path = os.path.join(models_path, "tokenizer.json")
    if not os.path.exists(path):
        logger.warning(f"tokenizer.json not found in {models_path}")
        return None, None

    hf_tokenizer = HFTokenizer.from_file(path)
    rt_info = {TOKENIZERS_VERSION_KEY: tokenizers.__version__}
    logger.debug(f"tokenizer: {path} (tokenizers {tokenizers.__version__})")

    # Truncation and padding are driven by the max_length / pad_to_max_length state
    pad_token_id = _pad_id_of(hf_tokenizer, rt_info)
    if hf_tokenizer.padding or hf_tokenizer.truncation:
        logger.debug("tokenizer.json padding / truncation settings disabled")
    hf_tokenizer.no_padding()
    hf_tokenizer.no_truncation()
    return (
        build_tokenizer_graph(hf_tokenizer, rt_info=rt_info, pad_token_id=pad_token_id),
        build_detokenizer_graph(hf_tokenizer, rt_info=rt_info),
    )
