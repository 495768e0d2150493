from paged_genai.graph.model import (
    STRING,
    ModelGraph,
    Node,
    Parameter,
    PartialShape,
    TensorSpec,
    Variable,
    merge_element_types,
)
from paged_genai.graph import ops
from paged_genai.graph import tokenizer_graphs
from paged_genai.graph.builder import AttentionGraphConfig, build_stateful_attention_graph
