"""
paged-genai: paged-attention graph rewriting and tokenizer sessions.

  Graph:        stateful attention graph → PagedAttention over cache blocks
  KV cache:     i32 block tables, per-layer head geometry
  Tokenizer:    encode / decode through compiled tokenizer graphs
  Chat:         Jinja2 chat templates

INL - 2025
"""

__version__ = "0.1.0"
