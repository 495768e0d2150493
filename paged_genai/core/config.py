"""
paged-genai :: Runtime Config

Process-level settings, read from the environment. CLI flags override.

    PAGED_GENAI_DEVICE         compile device (default CPU)
    PAGED_GENAI_NUM_REQUESTS   infer requests per compiled model (0 = auto)
    PAGED_GENAI_LOG_LEVEL      DEBUG / INFO / WARNING / ERROR
    PAGED_GENAI_LOG_JSON       1 → JSON log lines

INL - 2025
"""

import os
import torch
from typing import Mapping, Optional
from dataclasses import dataclass


def _env_bool(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RuntimeConfig:
    device: str = "CPU"
    num_requests: int = 0           # 0 → derived from torch thread count
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def optimal_num_requests(self) -> int:
        if self.num_requests > 0:
            return self.num_requests
        return max(1, torch.get_num_threads())

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "RuntimeConfig":
        env = os.environ if environ is None else environ
        config = RuntimeConfig()
        config.device = env.get("PAGED_GENAI_DEVICE", config.device).upper()
        num_requests = env.get("PAGED_GENAI_NUM_REQUESTS")
        if num_requests:
            config.num_requests = int(num_requests)
        config.log_level = env.get("PAGED_GENAI_LOG_LEVEL", config.log_level)
        config.log_json = _env_bool(env.get("PAGED_GENAI_LOG_JSON"))
        return config
