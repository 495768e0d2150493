"""
paged-genai :: Core

  - backend: graph compilation and infer requests
  - request_queue: bounded infer request pool
  - tokenizer: encode / decode session
  - special_tokens, chat_template: tokenizer metadata
  - kv_cache: paged KV cache with integer block management
"""

from paged_genai.core.config import RuntimeConfig
from paged_genai.core.logging import setup_logging, get_logger
