"""
paged-genai :: Test Paged-Attention Rewrite

Tests for:
  - SDPA → PagedAttention structural rewrite
  - Per-layer cache control and cache rotation inputs
  - KV head table extraction and cache parameter erasure
  - kv-config CLI

INL - 2025
"""

import json
import torch
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from paged_genai.graph import (
    AttentionGraphConfig, ModelGraph, Node, Parameter, PartialShape, build_stateful_attention_graph,
)
from paged_genai.transformations import (
    KVHeadConfig, SDPAToPagedAttention, apply_paged_attention_transformations, extract_kv_head_config,
)


def _graph(num_layers=3, kv_heads=2, kv_heads_per_layer=None, head_dim=None):
    config = AttentionGraphConfig(
        num_hidden_layers=num_layers,
        hidden_size=64,
        num_attention_heads=4,
        num_key_value_heads=kv_heads,
        head_dim=head_dim,
        kv_heads_per_layer=kv_heads_per_layer,
    )
    return build_stateful_attention_graph(config)


def _param_names(graph):
    return {p.friendly_name for p in graph.get_parameters()}


# =========================================================================
# Rewrite
# =========================================================================

class TestSDPAToPagedAttention:
    def test_state_removed(self):
        graph = _graph()
        apply_paged_attention_transformations(graph)
        op_types = {n.op_type for n in graph.nodes}
        assert graph.get_variables() == []
        assert "ReadValue" not in op_types
        assert "Assign" not in op_types
        assert "Concat" not in op_types
        assert "ScaledDotProductAttention" not in op_types
        assert sum(n.op_type == "PagedAttention" for n in graph.nodes) == 3

    def test_shared_inputs(self):
        graph = _graph()
        apply_paged_attention_transformations(graph)
        names = _param_names(graph)
        for name in ("past_lens", "subsequence_begins", "block_indices", "block_indices_begins", "max_context_len"):
            assert name in names
            assert graph.get_parameter(name).element_type == torch.int32
        assert graph.get_parameter("max_context_len").shape == []
        assert "block_indices.0" not in names
        assert not any(r.startswith("scores.") for r in graph.results)

    def test_per_layer_cache_control(self):
        graph = _graph()
        apply_paged_attention_transformations(graph, per_layer_cache_control=True)
        names = _param_names(graph)
        assert "block_indices" not in names
        assert {"block_indices.0", "block_indices.1", "block_indices.2"} <= names
        assert [r for r in graph.results if r.startswith("scores.")] == ["scores.0", "scores.1", "scores.2"]
        assert graph.spec_of("scores.1").element_type == torch.float32

    def test_cache_rotation_inputs(self):
        graph = _graph(num_layers=2)
        apply_paged_attention_transformations(graph, allow_cache_rotation=True)
        names = _param_names(graph)
        assert {"rotated_block_indices.0", "rotated_block_indices.1"} <= names
        assert {"rotation_deltas.0", "rotation_deltas.1"} <= names
        assert "rotation_trig_lut" in names
        assert graph.get_parameter("rotation_trig_lut").element_type == torch.float32
        assert all(n.attrs["allow_cache_rotation"] for n in graph.nodes if n.op_type == "PagedAttention")

    def test_output_shape_kept(self):
        graph = _graph()
        apply_paged_attention_transformations(graph)
        assert graph.spec_of("layers.2.out").shape == [None, None, 64]

    def test_no_state_no_change(self):
        graph = ModelGraph("plain")
        graph.add_parameter(Parameter("q", torch.float16, [1, 4, None, 16]))
        graph.add_parameter(Parameter("k", torch.float16, [1, 2, None, 16]))
        graph.add_parameter(Parameter("v", torch.float16, [1, 2, None, 16]))
        graph.add_node(Node("attn", "ScaledDotProductAttention", ["q", "k", "v"], ["o"]))
        graph.add_result("o")
        assert SDPAToPagedAttention().run_on_model(graph) is False
        assert graph.nodes[0].op_type == "ScaledDotProductAttention"


# =========================================================================
# Head table
# =========================================================================

class TestKVHeadConfig:
    def test_uniform_layers(self):
        graph = _graph(num_layers=3, kv_heads=2)
        table = apply_paged_attention_transformations(graph)
        assert table == [KVHeadConfig(2, 16, 2, 16)] * 3

    def test_per_layer_heads_in_order(self):
        graph = _graph(num_layers=3, kv_heads_per_layer=[1, 2, 4], head_dim=32)
        table = apply_paged_attention_transformations(graph)
        assert [c.num_k_heads for c in table] == [1, 2, 4]
        assert [c.num_v_heads for c in table] == [1, 2, 4]
        assert all(c.k_head_size == 32 and c.v_head_size == 32 for c in table)

    def test_caches_erased(self):
        graph = _graph()
        apply_paged_attention_transformations(graph)
        for i in range(3):
            for kind in ("key", "value"):
                param = graph.get_parameter(f"{kind}_cache.{i}")
                assert param.element_type is None
                assert param.shape == PartialShape.dynamic(4)

    def test_stateless_model_rejected(self):
        graph = _graph()
        apply_paged_attention_transformations(graph)
        with pytest.raises(RuntimeError, match="stateful"):
            apply_paged_attention_transformations(graph)

    def test_extract_before_erasure(self):
        graph = _graph(num_layers=2, kv_heads=1)
        SDPAToPagedAttention().run_on_model(graph)
        assert graph.get_parameter("key_cache.0").shape == [None, 1, 16]
        assert extract_kv_head_config(graph) == [KVHeadConfig(1, 16, 1, 16)] * 2


def _cache_graph(*params):
    graph = ModelGraph("caches")
    for name, shape in params:
        graph.add_parameter(Parameter(name, torch.float16, shape))
    return graph


class TestExtractErrors:
    def test_no_caches(self):
        with pytest.raises(RuntimeError):
            extract_kv_head_config(_cache_graph(("x", [1])))

    def test_count_mismatch(self):
        graph = _cache_graph(
            ("key_cache.0", [None, 2, 16]), ("key_cache.1", [None, 2, 16]), ("value_cache.0", [None, 2, 16]),
        )
        with pytest.raises(RuntimeError, match="value cache"):
            extract_kv_head_config(graph)

    def test_non_integer_suffix(self):
        graph = _cache_graph(("key_cache.a", [None, 2, 16]), ("value_cache.a", [None, 2, 16]))
        with pytest.raises(RuntimeError, match="layer index"):
            extract_kv_head_config(graph)

    def test_missing_layer(self):
        graph = _cache_graph(("key_cache.1", [None, 2, 16]), ("value_cache.1", [None, 2, 16]))
        with pytest.raises(RuntimeError, match="layer 0"):
            extract_kv_head_config(graph)

    def test_dynamic_dims(self):
        graph = _cache_graph(("key_cache.0", [None, None, 16]), ("value_cache.0", [None, 2, 16]))
        with pytest.raises(RuntimeError, match="static"):
            extract_kv_head_config(graph)


# =========================================================================
# CLI
# =========================================================================

class TestKVConfigCLI:
    def test_kv_config_json(self, tmp_path, capsys):
        from paged_genai.cli import main

        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "num_hidden_layers": 2, "hidden_size": 64, "num_attention_heads": 4, "num_key_value_heads": 2,
        }))
        main(["kv-config", str(path), "--num-blocks", "8", "--block-size", "4", "--json"])
        lines = capsys.readouterr().out.strip().splitlines()
        assert any(line.strip() == "layer   1: K 2x16  V 2x16" for line in lines)
        assert json.loads(lines[-1]) == [
            {"num_k_heads": 2, "k_head_size": 16, "num_v_heads": 2, "v_head_size": 16},
        ] * 2
        assert any(line.strip().startswith("cache:") for line in lines)
