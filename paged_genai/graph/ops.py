"""
paged-genai :: Graph Ops

Op registry: shape/type inference for every op type, plus an optional
evaluate() used by the CPU backend. Attention ops are inference-only;
executing them is the compute backend's business, not ours.

  ReadValue / Assign           state access
  Concat                       axis concatenation
  HeadProjection               (b, s, hidden) → (b, heads, s, head_size)
  OutputProjection             (b, heads, s, head_size) → (b, s, hidden)
  ScaledDotProductAttention    whole-history attention
  PagedAttention               block-cache attention (after rewrite)

INL - 2025
"""

import torch
from typing import Any, Dict, List, Optional

from paged_genai.graph.model import (
    ModelGraph, Node, PartialShape, TensorSpec, merge_element_types,
)

_OPS: Dict[str, "OpDef"] = {}

INDEX_TYPE = torch.int32


class OpDef:
    """Inference (and optionally evaluation) for one op type."""

    op_type: str = ""
    evaluable: bool = False

    def infer(self, graph: ModelGraph, node: Node, inputs: List[TensorSpec]) -> List[TensorSpec]:
        raise NotImplementedError

    def evaluate(self, node: Node, inputs: List[Any], request) -> List[Any]:
        raise NotImplementedError(f"{self.op_type} has no CPU kernel")


def register_op(cls):
    """Class decorator: register an OpDef subclass by its op_type."""
    _OPS[cls.op_type] = cls()
    return cls


def get_op(op_type: str) -> OpDef:
    if op_type not in _OPS:
        raise ValueError(f"Unknown op type: {op_type}. Registered: {', '.join(sorted(_OPS))}")
    return _OPS[op_type]


def _expect_count(inputs: List[TensorSpec], *counts: int):
    if len(inputs) not in counts:
        raise ValueError(f"expected {' or '.join(map(str, counts))} inputs, got {len(inputs)}")


def _expect_rank(spec: TensorSpec, rank: int, what: str):
    if spec.shape.rank is not None and spec.shape.rank != rank:
        raise ValueError(f"{what} must have rank {rank}, got {spec.shape}")


def _merge_dim(a: Optional[int], b: Optional[int], what: str) -> Optional[int]:
    if a is None:
        return b
    if b is None or a == b:
        return a
    raise ValueError(f"{what} mismatch: {a} vs {b}")


# =========================================================================
# State
# =========================================================================

@register_op
class ReadValue(OpDef):
    op_type = "ReadValue"
    evaluable = True

    def infer(self, graph, node, inputs):
        _expect_count(inputs, 0)
        return [graph.get_variable(node.attrs["variable_id"]).spec]

    def evaluate(self, node, inputs, request):
        return [request.read_state(node.attrs["variable_id"])]


@register_op
class Assign(OpDef):
    op_type = "Assign"
    evaluable = True

    def infer(self, graph, node, inputs):
        _expect_count(inputs, 1)
        variable = graph.get_variable(node.attrs["variable_id"])
        merge_element_types(variable.element_type, inputs[0].element_type)
        if not variable.shape.compatible(inputs[0].shape):
            raise ValueError(f"value {inputs[0].shape} does not fit variable {variable.shape}")
        return []

    def evaluate(self, node, inputs, request):
        request.assign_state(node.attrs["variable_id"], inputs[0])
        return []


# =========================================================================
# Structural
# =========================================================================

@register_op
class Concat(OpDef):
    op_type = "Concat"

    def infer(self, graph, node, inputs):
        if not inputs:
            raise ValueError("Concat needs at least one input")
        axis = node.attrs["axis"]
        element_type = None
        for spec in inputs:
            element_type = merge_element_types(element_type, spec.element_type)

        ranks = {s.shape.rank for s in inputs if s.shape.rank is not None}
        if not ranks:
            return [TensorSpec(element_type, PartialShape.dynamic())]
        if len(ranks) > 1:
            raise ValueError(f"rank mismatch: {[s.shape for s in inputs]}")
        rank = ranks.pop()

        dims: List[Optional[int]] = [None] * rank
        for d in range(rank):
            if d == axis % rank:
                sizes = [s.shape[d] for s in inputs]
                dims[d] = None if any(x is None for x in sizes) else sum(sizes)
            else:
                for s in inputs:
                    dims[d] = _merge_dim(dims[d], s.shape[d], f"dim {d}")
        return [TensorSpec(element_type, PartialShape(dims))]


@register_op
class HeadProjection(OpDef):
    op_type = "HeadProjection"

    def infer(self, graph, node, inputs):
        _expect_count(inputs, 1)
        x = inputs[0]
        _expect_rank(x, 3, "hidden states")
        batch, seq = x.shape[0], x.shape[1]
        shape = PartialShape([batch, node.attrs["num_heads"], seq, node.attrs["head_size"]])
        return [TensorSpec(x.element_type, shape)]


@register_op
class OutputProjection(OpDef):
    op_type = "OutputProjection"

    def infer(self, graph, node, inputs):
        _expect_count(inputs, 1)
        x = inputs[0]
        _expect_rank(x, 4, "attention output")
        shape = PartialShape([x.shape[0], x.shape[2], node.attrs["hidden_size"]])
        return [TensorSpec(x.element_type, shape)]


# =========================================================================
# Attention
# =========================================================================

def _attention_output(q: TensorSpec, k: TensorSpec, v: TensorSpec) -> TensorSpec:
    """
    q: (b, H, s, d)   k: (b, Hk, t, d)   v: (b, Hk, t, dv)  →  (b, H, s, dv)

    GQA: H must be a multiple of Hk when both are known.
    """
    element_type = merge_element_types(q.element_type, k.element_type)
    element_type = merge_element_types(element_type, v.element_type)

    num_heads, num_kv_heads = q.shape[1], k.shape[1]
    if num_heads is not None and num_kv_heads is not None and num_heads % num_kv_heads != 0:
        raise ValueError(f"query heads {num_heads} not a multiple of kv heads {num_kv_heads}")
    _merge_dim(q.shape[3], k.shape[3], "query/key head size")
    _merge_dim(k.shape[1], v.shape[1], "key/value heads")
    return TensorSpec(element_type, PartialShape([q.shape[0], num_heads, q.shape[2], v.shape[3]]))


@register_op
class ScaledDotProductAttention(OpDef):
    op_type = "ScaledDotProductAttention"

    def infer(self, graph, node, inputs):
        _expect_count(inputs, 3, 4)
        q, k, v = inputs[:3]
        for spec, what in ((q, "query"), (k, "key"), (v, "value")):
            _expect_rank(spec, 4, what)
        _merge_dim(k.shape[2], v.shape[2], "key/value length")
        return [_attention_output(q, k, v)]


# Positional layout of PagedAttention inputs.
PAGED_ATTENTION_INPUTS = (
    "query", "key", "value", "key_cache", "value_cache",
    "past_lens", "subsequence_begins", "block_indices", "block_indices_begins",
    "max_context_len",
)
PAGED_ATTENTION_ROTATION_INPUTS = ("rotated_block_indices", "rotation_deltas", "rotation_trig_lut")


@register_op
class PagedAttention(OpDef):
    """
    Attention over externally managed cache blocks.

    Cache inputs may be of dynamic element type and any shape of rank 3
    (pre-layout, (?, heads, head_size)) or 4 (backend block layout). Only
    rank-3 caches are checked against the K/V head geometry; rank-4 dims
    are the backend's business.
    """

    op_type = "PagedAttention"

    def infer(self, graph, node, inputs):
        rotation = node.attrs.get("allow_cache_rotation", False)
        expected = len(PAGED_ATTENTION_INPUTS) + (len(PAGED_ATTENTION_ROTATION_INPUTS) if rotation else 0)
        _expect_count(inputs, expected)
        named = dict(zip(PAGED_ATTENTION_INPUTS + PAGED_ATTENTION_ROTATION_INPUTS, inputs))

        q, k, v = named["query"], named["key"], named["value"]
        for spec, what in ((q, "query"), (k, "key"), (v, "value")):
            _expect_rank(spec, 4, what)

        for cache_name, src in (("key_cache", k), ("value_cache", v)):
            cache = named[cache_name]
            merge_element_types(cache.element_type, src.element_type)
            rank = cache.shape.rank
            if rank is None:
                continue
            if rank not in (3, 4):
                raise ValueError(f"{cache_name} must have rank 3 or 4, got {cache.shape}")
            if rank == 3:
                _merge_dim(cache.shape[1], src.shape[1], f"{cache_name} heads")
                _merge_dim(cache.shape[2], src.shape[3], f"{cache_name} head size")

        for index_name in ("past_lens", "subsequence_begins", "block_indices", "block_indices_begins"):
            spec = named[index_name]
            merge_element_types(spec.element_type, INDEX_TYPE)
            _expect_rank(spec, 1, index_name)
        merge_element_types(named["max_context_len"].element_type, INDEX_TYPE)

        if rotation:
            merge_element_types(named["rotated_block_indices"].element_type, INDEX_TYPE)
            merge_element_types(named["rotation_deltas"].element_type, INDEX_TYPE)

        out = [_attention_output(q, k, v)]
        if len(node.outputs) == 2:
            out.append(TensorSpec(torch.float32, PartialShape([None])))
        return out
