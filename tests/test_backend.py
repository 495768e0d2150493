"""
paged-genai :: Test Backend

Tests for:
  - RuntimeConfig from environment
  - Compile: device / num_requests checks, evaluable-only graphs
  - Infer requests: inputs, outputs, variable state
  - Infer request pool
  - Structured logging

INL - 2025
"""

import json
import logging
import threading
import time
import torch
from concurrent.futures import ThreadPoolExecutor
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from paged_genai.core.backend import BackendContext, VariableState
from paged_genai.core.config import RuntimeConfig
from paged_genai.core.logging import HumanFormatter, JSONFormatter, RequestLogger, get_logger, setup_logging
from paged_genai.core.request_queue import InferRequestQueue
from paged_genai.graph import AttentionGraphConfig, build_stateful_attention_graph
from paged_genai.graph.tokenizer_graphs import build_tokenizer_graph, make_add_special_tokens_stateful


# =========================================================================
# Config
# =========================================================================

class TestRuntimeConfig:
    def test_from_env(self):
        config = RuntimeConfig.from_env({
            "PAGED_GENAI_DEVICE": "cpu",
            "PAGED_GENAI_NUM_REQUESTS": "3",
            "PAGED_GENAI_LOG_LEVEL": "DEBUG",
            "PAGED_GENAI_LOG_JSON": "true",
        })
        assert config.device == "CPU"
        assert config.num_requests == 3
        assert config.optimal_num_requests == 3
        assert config.log_level == "DEBUG"
        assert config.log_json

    def test_defaults(self):
        config = RuntimeConfig.from_env({})
        assert config.device == "CPU"
        assert not config.log_json
        assert config.optimal_num_requests >= 1


# =========================================================================
# Compile
# =========================================================================

class TestCompile:
    def test_num_requests_from_config(self, hf_tokenizer, context):
        compiled = context.compile_model(build_tokenizer_graph(hf_tokenizer))
        assert compiled.optimal_number_of_infer_requests == 2
        assert compiled.get_property("num_requests") == 2

    def test_properties_override(self, hf_tokenizer, context):
        compiled = context.compile_model(build_tokenizer_graph(hf_tokenizer), properties={"num_requests": 5})
        assert compiled.optimal_number_of_infer_requests == 5
        with pytest.raises(KeyError):
            compiled.get_property("no_such_property")

    def test_zero_requests_rejected(self, hf_tokenizer, context):
        with pytest.raises(ValueError):
            context.compile_model(build_tokenizer_graph(hf_tokenizer), properties={"num_requests": 0})

    def test_unsupported_device(self, hf_tokenizer, context):
        with pytest.raises(RuntimeError, match="not supported"):
            context.compile_model(build_tokenizer_graph(hf_tokenizer), device="GPU")

    def test_attention_graph_has_no_kernel(self, context):
        config = AttentionGraphConfig(num_hidden_layers=1, hidden_size=32, num_attention_heads=2)
        with pytest.raises(RuntimeError, match="no CPU kernel"):
            context.compile_model(build_stateful_attention_graph(config))

    def test_rt_info_is_a_copy(self, hf_tokenizer, context):
        compiled = context.compile_model(build_tokenizer_graph(hf_tokenizer, rt_info={"a": 1}))
        compiled.rt_info["a"] = 2
        assert compiled.rt_info == {"a": 1}


# =========================================================================
# Infer requests
# =========================================================================

class TestInferRequest:
    def test_single_input(self, hf_tokenizer, context):
        compiled = context.compile_model(build_tokenizer_graph(hf_tokenizer, pair_input=False))
        request = compiled.create_infer_request()
        request.set_input_tensor(0, ["hello world", "hello"])
        request.infer()
        assert request.get_tensor("input_ids").tolist() == [[1, 4, 5, 2], [1, 4, 2, 0]]
        assert request.get_output_tensor(1).tolist() == [[1, 1, 1, 1], [1, 1, 1, 0]]
        assert request.get_compiled_model() is compiled

    def test_missing_input(self, hf_tokenizer, context):
        request = context.compile_model(build_tokenizer_graph(hf_tokenizer)).create_infer_request()
        request.set_input_tensor("string_input", ["hello"])
        with pytest.raises(RuntimeError, match="string_input_2"):
            request.infer()

    def test_bad_input_key(self, hf_tokenizer, context):
        request = context.compile_model(build_tokenizer_graph(hf_tokenizer)).create_infer_request()
        with pytest.raises(IndexError):
            request.set_input_tensor(5, ["hello"])
        with pytest.raises(KeyError):
            request.set_tensor("nope", ["hello"])

    def test_state_toggles_flag(self, hf_tokenizer, context):
        graph = build_tokenizer_graph(hf_tokenizer, pair_input=False)
        assert make_add_special_tokens_stateful(graph)
        assert not make_add_special_tokens_stateful(graph)

        request = context.compile_model(graph).create_infer_request()
        assert [s.name for s in request.query_state()] == ["add_special_tokens"]
        assert request.read_state("add_special_tokens").item() is True

        request.assign_state("add_special_tokens", False)
        request.set_input_tensor(0, ["hello world"])
        request.infer()
        assert request.get_tensor("input_ids").tolist() == [[4, 5]]

        request.reset_state()
        request.infer()
        assert request.get_tensor("input_ids").tolist() == [[1, 4, 5, 2]]

    def test_state_shape_checked(self, hf_tokenizer, context):
        graph = build_tokenizer_graph(hf_tokenizer, pair_input=False)
        make_add_special_tokens_stateful(graph)
        state = context.compile_model(graph).create_infer_request().query_state()[0]
        assert isinstance(state, VariableState)
        assert state.element_type == torch.bool
        with pytest.raises(ValueError):
            state.set_state(torch.tensor([True, False]))

    def test_requests_hold_separate_state(self, hf_tokenizer, context):
        graph = build_tokenizer_graph(hf_tokenizer, pair_input=False)
        make_add_special_tokens_stateful(graph)
        compiled = context.compile_model(graph)
        a, b = compiled.create_infer_request(), compiled.create_infer_request()
        a.assign_state("add_special_tokens", False)
        assert b.read_state("add_special_tokens").item() is True


# =========================================================================
# Pool
# =========================================================================

class TestInferRequestQueue:
    def test_capacity(self):
        with pytest.raises(ValueError):
            InferRequestQueue(0, object)

    def test_released_on_error(self):
        pool = InferRequestQueue(2, object)
        assert pool.num_free == 2
        with pytest.raises(RuntimeError):
            with pool.acquire() as pooled:
                assert pool.num_free == 1
                pooled.state_flags["x"] = 1
                raise RuntimeError("boom")
        assert pool.num_free == 2

    def test_fifo_reuse(self):
        pool = InferRequestQueue(1, object)
        with pool.acquire() as first:
            pass
        with pool.acquire() as second:
            assert second is first

    def test_acquire_blocks_until_release(self):
        pool = InferRequestQueue(1, object)
        acquired = threading.Event()
        seen = []

        def worker():
            with pool.acquire() as pooled:
                seen.append(pooled)
                acquired.set()

        with pool.acquire() as held:
            thread = threading.Thread(target=worker)
            thread.start()
            assert not acquired.wait(0.2)
            assert pool.num_free == 0
        assert acquired.wait(5)
        thread.join(5)
        assert seen == [held]
        assert pool.num_free == 1

    def test_entries_never_shared(self):
        pool = InferRequestQueue(2, object)
        holders = {}
        lock = threading.Lock()

        def worker(i):
            with pool.acquire() as pooled:
                with lock:
                    assert id(pooled) not in holders
                    holders[id(pooled)] = i
                time.sleep(0.001)
                with lock:
                    del holders[id(pooled)]

        with ThreadPoolExecutor(max_workers=6) as executor:
            list(executor.map(worker, range(60)))
        assert pool.num_free == 2


# =========================================================================
# Logging
# =========================================================================

class TestLogging:
    def test_json_formatter(self):
        record = logging.LogRecord("paged_genai.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.request_id = 7
        record.extra_data = {"elapsed_ms": 1.5}
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "hello world"
        assert entry["logger"] == "paged_genai.test"
        assert entry["request_id"] == 7
        assert entry["elapsed_ms"] == 1.5

    def test_setup_logging(self, tmp_path):
        log_file = tmp_path / "log.jsonl"
        logger = setup_logging("DEBUG", log_file=str(log_file))
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        get_logger("paged_genai.test").debug("to file")
        for handler in logger.handlers:
            handler.flush()
        assert json.loads(log_file.read_text().splitlines()[-1])["message"] == "to file"
        setup_logging("INFO")

    def test_request_logger(self, caplog):
        req_log = RequestLogger(3, get_logger("paged_genai.test"))
        with caplog.at_level(logging.INFO, logger="paged_genai"):
            req_log.info("served", tokens=4)
        assert caplog.records[-1].request_id == 3
        assert req_log.elapsed_ms() >= 0

    def test_request_logger_endpoint(self, caplog):
        req_log = RequestLogger(5, get_logger("paged_genai.test"), endpoint="/v1/tokenize")
        with caplog.at_level(logging.WARNING, logger="paged_genai"):
            req_log.warning("rejected")
        record = caplog.records[-1]
        assert record.endpoint == "/v1/tokenize"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["endpoint"] == "/v1/tokenize"
        assert entry["request_id"] == 5

    def test_human_formatter(self):
        record = logging.LogRecord("paged_genai.test", logging.INFO, __file__, 1, "served", (), None)
        record.request_id = 2
        record.endpoint = "/v1/detokenize"
        record.extra_data = {"tokens": 4}
        line = HumanFormatter(color=False).format(record)
        assert "[   INFO] paged_genai.test: served" in line
        assert line.endswith("[req=2 /v1/detokenize] tokens=4")
        assert "\033[" not in line
