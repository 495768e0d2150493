"""
paged-genai :: Paged-Attention Transformations

Turns a stateful attention graph into a paged one and reports the per-layer
KV head geometry the cache allocator needs.

    kv_heads = apply_paged_attention_transformations(graph)
    cache = PagedKVCache(kv_heads, num_blocks=1024)

After the rewrite, every key_cache.{i} / value_cache.{i} parameter has a
dynamic element type and a fully dynamic rank-4 shape: precision and block
layout are left to whoever executes the graph. The head table is the only
record of the original geometry, so callers must keep it.

INL - 2025
"""

from dataclasses import dataclass
from typing import Dict, List

from paged_genai.core.logging import get_logger
from paged_genai.graph.model import ModelGraph, Parameter, PartialShape
from paged_genai.transformations.sdpa_to_paged_attention import SDPAToPagedAttention

logger = get_logger("paged_genai.transformations")

KEY_CACHE_PREFIX = "key_cache."
VALUE_CACHE_PREFIX = "value_cache."


@dataclass(frozen=True)
class KVHeadConfig:
    num_k_heads: int
    k_head_size: int
    num_v_heads: int
    v_head_size: int


def _cache_params(model: ModelGraph, prefix: str) -> Dict[int, Parameter]:
    params = {}
    for param in model.get_parameters():
        name = param.friendly_name
        if not name.startswith(prefix):
            continue
        suffix = name[len(prefix):]
        if not suffix.isdigit():
            raise RuntimeError(f"Cache parameter {name} has no integer layer index")
        params[int(suffix)] = param
    return params


def _static_dims(param: Parameter):
    shape = param.shape
    if shape.rank is None or shape.rank < 3:
        raise RuntimeError(f"{param.friendly_name}: expected rank >= 3 shape, got {shape}")
    heads, head_size = shape[1], shape[2]
    if not heads or not head_size:
        raise RuntimeError(
            f"{param.friendly_name}: heads and head size must be static and positive, got {shape}"
        )
    return heads, head_size


def extract_kv_head_config(model: ModelGraph) -> List[KVHeadConfig]:
    """
    Per-layer (heads, head_size) of key_cache.{i} / value_cache.{i},
    read from dims 1 and 2. Ordered by layer index.
    """
    keys = _cache_params(model, KEY_CACHE_PREFIX)
    values = _cache_params(model, VALUE_CACHE_PREFIX)
    if not keys:
        raise RuntimeError(f"{model.name} has no {KEY_CACHE_PREFIX}* parameters")
    if len(keys) != len(values):
        raise RuntimeError(
            f"{model.name}: {len(keys)} key cache parameters vs {len(values)} value cache parameters"
        )

    configs = []
    for idx in range(len(keys)):
        if idx not in keys or idx not in values:
            raise RuntimeError(f"{model.name}: missing cache parameters for layer {idx}")
        num_k_heads, k_head_size = _static_dims(keys[idx])
        num_v_heads, v_head_size = _static_dims(values[idx])
        configs.append(KVHeadConfig(num_k_heads, k_head_size, num_v_heads, v_head_size))
    return configs


def apply_paged_attention_transformations(
    model: ModelGraph,
    per_layer_cache_control: bool = False,
    allow_cache_rotation: bool = False,
) -> List[KVHeadConfig]:
    """
    Rewrite `model` in place for paged attention.

    Args:
        per_layer_cache_control: per-layer block_indices inputs and scores outputs
        allow_cache_rotation: add cache rotation inputs

    Returns:
        KV head geometry per layer, captured before the cache shapes are erased.
    """
    if not model.get_variables():
        raise RuntimeError("Model is supposed to be stateful")

    SDPAToPagedAttention(
        use_block_indices_inputs=per_layer_cache_control,
        use_score_outputs=per_layer_cache_control,
        allow_cache_rotation=allow_cache_rotation,
    ).run_on_model(model)

    kv_head_configs = extract_kv_head_config(model)

    for prefix in (KEY_CACHE_PREFIX, VALUE_CACHE_PREFIX):
        for param in _cache_params(model, prefix).values():
            param.set_element_type(None)
            param.set_partial_shape(PartialShape.dynamic(4))

    model.validate_nodes_and_infer_types()
    logger.info(f"{model.name}: paged attention over {len(kv_head_configs)} layers")
    return kv_head_configs
