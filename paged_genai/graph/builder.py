"""
paged-genai :: Stateful Attention Graph Builder

Builds the decoder attention graph a stateful export produces: per layer,
the KV history lives in two state variables and grows by one Concat per
call.

    past_key_values.{i}.key   (b, kv_heads, ?, head_size)
    past_key_values.{i}.value (b, kv_heads, ?, head_size)

    q = HeadProjection(x)
    k = Concat(ReadValue(past.key), HeadProjection(x)) → Assign(past.key)
    v = Concat(ReadValue(past.value), HeadProjection(x)) → Assign(past.value)
    x = OutputProjection(SDPA(q, k, v))

This is the input the paged-attention rewrite expects.

INL - 2025
"""

import json
import torch
from typing import List, Optional
from dataclasses import dataclass

from paged_genai.graph.model import ModelGraph, Node, Parameter, Variable, PartialShape

_DTYPES = {
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
    "float32": torch.float32,
}


@dataclass
class AttentionGraphConfig:
    """
    Attention geometry. Mirrors the relevant keys of a HuggingFace config.json.
    """
    num_hidden_layers: int = 24
    hidden_size: int = 2048
    num_attention_heads: int = 16
    num_key_value_heads: Optional[int] = None   # None → MHA
    head_dim: Optional[int] = None              # None → hidden_size // heads
    torch_dtype: str = "float16"

    # Per-layer KV heads for models with non-uniform layers (e.g. OpenELM)
    kv_heads_per_layer: Optional[List[int]] = None

    @property
    def head_size(self) -> int:
        if self.head_dim:
            return self.head_dim
        return self.hidden_size // self.num_attention_heads

    @property
    def dtype(self) -> torch.dtype:
        return _DTYPES.get(self.torch_dtype, torch.float32)

    def layer_kv_heads(self, layer_idx: int) -> int:
        if self.kv_heads_per_layer is not None:
            return self.kv_heads_per_layer[layer_idx]
        return self.num_key_value_heads or self.num_attention_heads

    @staticmethod
    def from_json(path: str) -> "AttentionGraphConfig":
        """Load from a checkpoint config.json. Unknown keys are ignored."""
        with open(path, "r") as f:
            data = json.load(f)
        config = AttentionGraphConfig()
        for key, val in data.items():
            if hasattr(config, key) and val is not None:
                setattr(config, key, val)
        return config


def build_stateful_attention_graph(config: AttentionGraphConfig, name: str = "decoder") -> ModelGraph:
    """Build a stateful whole-history attention graph from config."""
    if config.kv_heads_per_layer is not None and len(config.kv_heads_per_layer) != config.num_hidden_layers:
        raise ValueError(
            f"kv_heads_per_layer has {len(config.kv_heads_per_layer)} entries, "
            f"expected {config.num_hidden_layers}"
        )

    graph = ModelGraph(name)
    dtype = config.dtype
    head_size = config.head_size

    graph.add_parameter(Parameter("hidden_states", dtype, [None, None, config.hidden_size]))
    x = "hidden_states"

    for i in range(config.num_hidden_layers):
        kv_heads = config.layer_kv_heads(i)
        prefix = f"layers.{i}"

        graph.add_node(Node(
            f"{prefix}.q_proj", "HeadProjection", [x], [f"{prefix}.q"],
            {"num_heads": config.num_attention_heads, "head_size": head_size},
        ))

        present = {}
        for kind in ("key", "value"):
            var_id = f"past_key_values.{i}.{kind}"
            graph.add_variable(Variable(
                var_id, dtype, PartialShape([None, kv_heads, None, head_size]),
                initial_value=torch.zeros(1, kv_heads, 0, head_size, dtype=dtype),
            ))
            short = kind[0]
            graph.add_node(Node(
                f"{prefix}.{short}_proj", "HeadProjection", [x], [f"{prefix}.{short}_new"],
                {"num_heads": kv_heads, "head_size": head_size},
            ))
            graph.add_node(Node(
                f"{prefix}.past_{kind}", "ReadValue", [], [f"{prefix}.past_{kind}"],
                {"variable_id": var_id},
            ))
            graph.add_node(Node(
                f"{prefix}.{kind}_concat", "Concat",
                [f"{prefix}.past_{kind}", f"{prefix}.{short}_new"], [f"{prefix}.present_{kind}"],
                {"axis": 2},
            ))
            graph.add_node(Node(
                f"{prefix}.{kind}_assign", "Assign", [f"{prefix}.present_{kind}"], [],
                {"variable_id": var_id},
            ))
            present[kind] = f"{prefix}.present_{kind}"

        graph.add_node(Node(
            f"{prefix}.sdpa", "ScaledDotProductAttention",
            [f"{prefix}.q", present["key"], present["value"]], [f"{prefix}.attn"],
        ))
        graph.add_node(Node(
            f"{prefix}.o_proj", "OutputProjection", [f"{prefix}.attn"], [f"{prefix}.out"],
            {"hidden_size": config.hidden_size},
        ))
        x = f"{prefix}.out"

    graph.add_result(x)
    graph.validate_nodes_and_infer_types()
    return graph
