"""
paged-genai :: SDPA → PagedAttention

Structural rewrite of a stateful attention graph into its paged form.

Before, per layer:
    past = ReadValue(past_key_values.{i}.key)
    k    = Concat(past, k_new)  → Assign(past_key_values.{i}.key)
    out  = SDPA(q, k, v)

After, per layer:
    out [, scores.{i}] = PagedAttention(q, k_new, v_new,
                                        key_cache.{i}, value_cache.{i},
                                        past_lens, subsequence_begins,
                                        block_indices[.{i}], block_indices_begins,
                                        max_context_len
                                        [, rotated_block_indices.{i}, rotation_deltas.{i}, rotation_trig_lut])

The KV history moves out of the graph into caller-managed cache blocks,
so ReadValue/Concat/Assign and the state variables are removed.

INL - 2025
"""

import torch
from typing import List, Optional, Tuple

from paged_genai.core.logging import get_logger
from paged_genai.graph.model import ModelGraph, Node, Parameter, Variable
from paged_genai.graph.ops import INDEX_TYPE

logger = get_logger("paged_genai.transformations")

SHARED_INPUTS = {
    "past_lens": [None],
    "subsequence_begins": [None],
    "block_indices_begins": [None],
    "max_context_len": [],
}


class SDPAToPagedAttention:
    """
    Args:
        use_block_indices_inputs: per-layer block_indices.{i} instead of one shared input
        use_score_outputs: expose per-layer attention scores as scores.{i} results
        allow_cache_rotation: add per-layer rotation inputs and a shared trig LUT
    """

    def __init__(
        self,
        use_block_indices_inputs: bool = False,
        use_score_outputs: bool = False,
        allow_cache_rotation: bool = False,
    ):
        self.use_block_indices_inputs = use_block_indices_inputs
        self.use_score_outputs = use_score_outputs
        self.allow_cache_rotation = allow_cache_rotation

    def _history_source(self, graph: ModelGraph, value: str) -> Optional[Tuple[Node, Node, Variable, str]]:
        """Match value = Concat(ReadValue(var), new). Returns (concat, read, var, new)."""
        concat = graph.producer_of(value)
        if concat is None or concat.op_type != "Concat" or len(concat.inputs) != 2:
            return None
        read = graph.producer_of(concat.inputs[0])
        if read is None or read.op_type != "ReadValue":
            return None
        return concat, read, graph.get_variable(read.attrs["variable_id"]), concat.inputs[1]

    def _add_input(self, graph: ModelGraph, name: str, element_type, shape) -> str:
        if not graph.has_parameter(name):
            graph.add_parameter(Parameter(name, element_type, shape))
        return name

    def run_on_model(self, graph: ModelGraph) -> bool:
        """Rewrite in place. Returns True if any attention node was replaced."""
        sdpa_nodes = [n for n in graph.get_ordered_ops() if n.op_type == "ScaledDotProductAttention"]

        dead_nodes: List[str] = []
        dead_variables: List[str] = []
        layer = 0
        for sdpa in sdpa_nodes:
            key_src = self._history_source(graph, sdpa.inputs[1])
            value_src = self._history_source(graph, sdpa.inputs[2])
            if key_src is None or value_src is None:
                logger.debug(f"{sdpa.name}: K/V not fed by state, left as is")
                continue

            caches = []
            new_kv = []
            for kind, (concat, read, variable, new) in (("key", key_src), ("value", value_src)):
                # (?, heads, head_size) from the (b, heads, t, head_size) history
                shape = [None, variable.shape[1], variable.shape[3]]
                caches.append(self._add_input(graph, f"{kind}_cache.{layer}", variable.element_type, shape))
                new_kv.append(new)
                dead_nodes.extend([concat.name, read.name])
                dead_variables.append(variable.variable_id)

            inputs = [sdpa.inputs[0], new_kv[0], new_kv[1], caches[0], caches[1]]
            for name in ("past_lens", "subsequence_begins"):
                inputs.append(self._add_input(graph, name, INDEX_TYPE, SHARED_INPUTS[name]))
            block_indices = f"block_indices.{layer}" if self.use_block_indices_inputs else "block_indices"
            inputs.append(self._add_input(graph, block_indices, INDEX_TYPE, [None]))
            for name in ("block_indices_begins", "max_context_len"):
                inputs.append(self._add_input(graph, name, INDEX_TYPE, SHARED_INPUTS[name]))

            if self.allow_cache_rotation:
                inputs.append(self._add_input(graph, f"rotated_block_indices.{layer}", INDEX_TYPE, [None]))
                inputs.append(self._add_input(graph, f"rotation_deltas.{layer}", INDEX_TYPE, [None, None]))
                inputs.append(self._add_input(graph, "rotation_trig_lut", torch.float32, [None, None]))

            outputs = [sdpa.outputs[0]]
            if self.use_score_outputs:
                outputs.append(f"scores.{layer}")

            graph.replace_node(sdpa.name, Node(
                sdpa.name, "PagedAttention", inputs, outputs,
                {"layer": layer, "allow_cache_rotation": self.allow_cache_rotation},
            ))
            if self.use_score_outputs:
                graph.add_result(f"scores.{layer}")
            layer += 1

        if not layer:
            return False

        dead_nodes.extend(
            n.name for n in graph.nodes
            if n.op_type == "Assign" and n.attrs["variable_id"] in dead_variables
        )
        for name in dead_nodes:
            graph.remove_node(name)
        for variable_id in dead_variables:
            graph.remove_variable(variable_id)

        logger.debug(f"{graph.name}: {layer} attention layers converted to PagedAttention")
        return True
