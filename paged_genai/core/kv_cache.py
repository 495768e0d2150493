"""
paged-genai :: Paged KV Cache

Block cache sized from the per-layer head table that the paged-attention
rewrite returns. Layers may differ in head count and head size, and K may
differ from V within a layer.

All metadata is integer:
  - Block table: i32 (max_seqs, max_blocks_per_seq), -1 = unassigned
  - Free list: physical block ids
  - Sequence lengths: i32

Layouts (per layer, per K/V):
  token_major: (num_blocks, block_size, heads, head_size)
  head_major:  (num_blocks, heads, block_size, head_size)

INL - 2025
"""

import torch
from typing import Dict, List, Optional, Sequence, Tuple, Union

from paged_genai.core.logging import get_logger
from paged_genai.transformations.paged_attention import KVHeadConfig

logger = get_logger("paged_genai.kv_cache")

LAYOUTS = ("token_major", "head_major")


class PagedKVCache:
    """
    Paged KV cache with integer block management.

    One block table is shared by all layers: a sequence owns the same
    physical block ids in every layer.
    """

    def __init__(
        self,
        kv_head_configs: Sequence[KVHeadConfig],
        block_size: int = 16,
        num_blocks: int = 256,
        max_seqs: int = 64,
        max_blocks_per_seq: int = 128,
        dtype: torch.dtype = torch.float16,
        layout: str = "token_major",
        device: str = "cpu",
    ):
        if not kv_head_configs:
            raise ValueError("kv_head_configs is empty")
        if layout not in LAYOUTS:
            raise ValueError(f"Unknown layout {layout!r}. Available: {', '.join(LAYOUTS)}")

        self.kv_head_configs = list(kv_head_configs)
        self.num_layers = len(self.kv_head_configs)
        self.block_size = block_size
        self.num_blocks = num_blocks
        self.max_seqs = max_seqs
        self.max_blocks_per_seq = max_blocks_per_seq
        self.layout = layout
        self.dtype = dtype
        self.device = device

        self.k_caches = [self._alloc(c.num_k_heads, c.k_head_size) for c in self.kv_head_configs]
        self.v_caches = [self._alloc(c.num_v_heads, c.v_head_size) for c in self.kv_head_configs]

        self.block_table = torch.full(
            (max_seqs, max_blocks_per_seq), -1, dtype=torch.int32, device=device
        )
        self.free_blocks: List[int] = list(range(num_blocks))
        self.seq_lens = torch.zeros(max_seqs, dtype=torch.int32, device=device)

    def _alloc(self, heads: int, head_size: int) -> torch.Tensor:
        if self.layout == "token_major":
            shape = (self.num_blocks, self.block_size, heads, head_size)
        else:
            shape = (self.num_blocks, heads, self.block_size, head_size)
        return torch.zeros(*shape, dtype=self.dtype, device=self.device)

    @property
    def num_free_blocks(self) -> int:
        return len(self.free_blocks)

    @property
    def num_used_blocks(self) -> int:
        return self.num_blocks - len(self.free_blocks)

    def num_seq_blocks(self, seq_id: int) -> int:
        return int((self.block_table[seq_id] >= 0).sum().item())

    # =====================================================================
    # Block management
    # =====================================================================

    def allocate_blocks(self, seq_id: int, num_blocks_needed: int) -> List[int]:
        """Append `num_blocks_needed` blocks to a sequence. Returns their ids."""
        if num_blocks_needed > len(self.free_blocks):
            raise RuntimeError(
                f"OOM: need {num_blocks_needed} blocks, have {len(self.free_blocks)}"
            )
        current_blocks = self.num_seq_blocks(seq_id)
        if current_blocks + num_blocks_needed > self.max_blocks_per_seq:
            raise RuntimeError(
                f"Sequence {seq_id} would hold {current_blocks + num_blocks_needed} blocks, "
                f"max is {self.max_blocks_per_seq}"
            )

        allocated = []
        for i in range(num_blocks_needed):
            block_id = self.free_blocks.pop()
            self.block_table[seq_id, current_blocks + i] = block_id
            allocated.append(block_id)
        return allocated

    def _ensure_capacity(self, seq_id: int, num_tokens: int):
        needed = -(-num_tokens // self.block_size) - self.num_seq_blocks(seq_id)
        if needed > 0:
            self.allocate_blocks(seq_id, needed)

    def free_sequence(self, seq_id: int):
        """Return all blocks of a sequence to the free list."""
        blocks = self.block_table[seq_id]
        held = blocks[blocks >= 0].tolist()
        self.free_blocks.extend(held)
        blocks.fill_(-1)
        self.seq_lens[seq_id] = 0

    # =====================================================================
    # Data
    # =====================================================================

    def _slots(self, seq_id: int, positions: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        block_ids = self.block_table[seq_id, positions // self.block_size].long()
        return block_ids, positions % self.block_size

    def write_kv(
        self,
        layer_idx: int,
        seq_id: int,
        position: int,
        k: torch.Tensor,   # (n, k_heads, k_head_size) or (k_heads, k_head_size)
        v: torch.Tensor,   # (n, v_heads, v_head_size) or (v_heads, v_head_size)
    ):
        """Write n consecutive tokens starting at `position`. Allocates blocks as needed."""
        if k.dim() == 2:
            k, v = k.unsqueeze(0), v.unsqueeze(0)
        config = self.kv_head_configs[layer_idx]
        if tuple(k.shape[1:]) != (config.num_k_heads, config.k_head_size):
            raise ValueError(
                f"layer {layer_idx}: key of shape {tuple(k.shape)} does not match "
                f"({config.num_k_heads}, {config.k_head_size})"
            )
        if tuple(v.shape[1:]) != (config.num_v_heads, config.v_head_size):
            raise ValueError(
                f"layer {layer_idx}: value of shape {tuple(v.shape)} does not match "
                f"({config.num_v_heads}, {config.v_head_size})"
            )
        if k.shape[0] != v.shape[0]:
            raise ValueError(f"key has {k.shape[0]} tokens, value has {v.shape[0]}")

        n = k.shape[0]
        self._ensure_capacity(seq_id, position + n)
        positions = torch.arange(position, position + n, device=self.device)
        block_ids, offsets = self._slots(seq_id, positions)

        if self.layout == "token_major":
            self.k_caches[layer_idx][block_ids, offsets] = k.to(self.dtype)
            self.v_caches[layer_idx][block_ids, offsets] = v.to(self.dtype)
        else:
            self.k_caches[layer_idx][block_ids, :, offsets] = k.to(self.dtype)
            self.v_caches[layer_idx][block_ids, :, offsets] = v.to(self.dtype)
        self.seq_lens[seq_id] = max(int(self.seq_lens[seq_id].item()), position + n)

    def read_kv(
        self,
        layer_idx: int,
        seq_id: int,
        max_len: Optional[int] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Read all K/V of a sequence.

        Returns:
            k: (seq_len, k_heads, k_head_size)
            v: (seq_len, v_heads, v_head_size)
        """
        seq_len = int(self.seq_lens[seq_id].item())
        if max_len is not None:
            seq_len = min(seq_len, max_len)
        positions = torch.arange(seq_len, device=self.device)
        block_ids, offsets = self._slots(seq_id, positions)

        if self.layout == "token_major":
            k = self.k_caches[layer_idx][block_ids, offsets]
            v = self.v_caches[layer_idx][block_ids, offsets]
        else:
            k = self.k_caches[layer_idx][block_ids, :, offsets]
            v = self.v_caches[layer_idx][block_ids, :, offsets]
        return k, v

    def get_cache_tensors(self, layer_idx: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """Raw K/V block tensors of a layer: the key_cache.{i} / value_cache.{i} inputs."""
        return self.k_caches[layer_idx], self.v_caches[layer_idx]

    def get_block_table_for_seqs(self, seq_ids: List[int]) -> torch.Tensor:
        """(num_seqs, max_blocks_per_seq) int32 rows."""
        return self.block_table[seq_ids]

    def get_cache_seqlens(self, seq_ids: List[int]) -> torch.Tensor:
        return self.seq_lens[seq_ids]

    # =====================================================================
    # PagedAttention scheduling inputs
    # =====================================================================

    def paged_attention_inputs(
        self,
        seq_ids: List[int],
        num_new_tokens: Union[int, List[int]],
        per_layer: bool = False,
    ) -> Dict[str, torch.Tensor]:
        """
        Scheduling inputs for one PagedAttention step over `seq_ids`, each
        about to add `num_new_tokens` tokens. Blocks for the new tokens are
        allocated here.

            past_lens              (n,)    tokens already cached per sequence
            subsequence_begins     (n+1,)  offsets of each sequence's new tokens
            block_indices          (sum,)  physical blocks, sequence after sequence
            block_indices_begins   (n+1,)  offsets into block_indices
            max_context_len        ()      longest past + new

        per_layer=True emits block_indices.{i} for every layer instead.
        """
        if isinstance(num_new_tokens, int):
            num_new_tokens = [num_new_tokens] * len(seq_ids)
        if len(num_new_tokens) != len(seq_ids):
            raise ValueError(f"{len(seq_ids)} sequences but {len(num_new_tokens)} token counts")

        past_lens = self.seq_lens[seq_ids].clone()
        blocks = []
        for seq_id, past, new in zip(seq_ids, past_lens.tolist(), num_new_tokens):
            self._ensure_capacity(seq_id, past + new)
            blocks.append(self.block_table[seq_id, : self.num_seq_blocks(seq_id)])

        new_counts = torch.tensor(num_new_tokens, dtype=torch.int32, device=self.device)
        zero = torch.zeros(1, dtype=torch.int32, device=self.device)
        block_counts = torch.tensor([b.numel() for b in blocks], dtype=torch.int32, device=self.device)
        block_indices = torch.cat(blocks) if blocks else torch.zeros(0, dtype=torch.int32, device=self.device)
        context_lens = past_lens + new_counts

        inputs = {
            "past_lens": past_lens,
            "subsequence_begins": torch.cat([zero, new_counts.cumsum(0).to(torch.int32)]),
            "block_indices_begins": torch.cat([zero, block_counts.cumsum(0).to(torch.int32)]),
            "max_context_len": context_lens.max().to(torch.int32) if len(seq_ids) else zero[0],
        }
        if per_layer:
            for i in range(self.num_layers):
                inputs[f"block_indices.{i}"] = block_indices.clone()
        else:
            inputs["block_indices"] = block_indices
        return inputs

    def get_stats(self) -> dict:
        """Cache stats, all integers except layout."""
        cache_bytes = sum(t.numel() * t.element_size() for t in self.k_caches + self.v_caches)
        return {
            "num_layers": self.num_layers,
            "num_blocks": self.num_blocks,
            "used_blocks": self.num_used_blocks,
            "free_blocks": self.num_free_blocks,
            "block_size": self.block_size,
            "active_seqs": int((self.seq_lens > 0).sum().item()),
            "cache_bytes": cache_bytes,
            "layout": self.layout,
        }
