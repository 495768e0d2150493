from paged_genai.transformations.paged_attention import (
    KVHeadConfig,
    apply_paged_attention_transformations,
    extract_kv_head_config,
)
from paged_genai.transformations.sdpa_to_paged_attention import SDPAToPagedAttention
