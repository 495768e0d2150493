"""
paged-genai :: API Server (aiohttp)

HTTP front for a Tokenizer session. Tokenizer calls block on the request
pools, so they run in the default executor and the event loop stays free.

Endpoints:
    POST /v1/tokenize        → input_ids / attention_mask [/ token_type_ids]
    POST /v1/detokenize      → text
    POST /v1/chat/template   → rendered prompt
    GET  /health             → health check + tokenizer info
    GET  /metrics            → Prometheus metrics

INL - 2025
"""

import asyncio
import functools
import json
import time
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from paged_genai.core.logging import RequestLogger, get_logger
from paged_genai.core.metrics import TokenizerMetrics
from paged_genai.core.tokenizer import Tokenizer

logger = get_logger("paged_genai.server")


def _error(message: str, error_type: str, status: int) -> web.Response:
    return web.json_response({"error": {"message": message, "type": error_type}}, status=status)


class TokenizerServer:
    """
    Serves one Tokenizer.

    ValueError / TypeError from the tokenizer → 400 invalid_request_error,
    RuntimeError → 500 server_error.
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        model_name: str = "paged-genai",
        host: str = "0.0.0.0",
        port: int = 8000,
        api_key: Optional[str] = None,
    ):
        self.tokenizer = tokenizer
        self.model_name = model_name
        self.host = host
        self.port = port
        self.api_key = api_key
        self.metrics = TokenizerMetrics(model_name)
        self.request_counter: int = 0
        self._start_time = time.monotonic()

    async def _read_json(self, request: web.Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise ValueError("Invalid JSON")
        if not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")
        return body

    async def _serve(self, endpoint: str, request: web.Request, work: Callable[[Dict[str, Any]], Any]) -> web.Response:
        """Parse the body, run `work(body)` off the event loop, map errors."""
        self.request_counter += 1
        req_log = RequestLogger(self.request_counter, logger, endpoint=endpoint)
        start = self.metrics.on_request_start(endpoint)
        failed = True
        try:
            body = await self._read_json(request)
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, functools.partial(work, body))
            failed = False
        except (ValueError, TypeError) as e:
            req_log.warning(f"rejected: {e}")
            return _error(str(e), "invalid_request_error", 400)
        except Exception as e:
            req_log.error(f"failed: {type(e).__name__}: {e}", elapsed_ms=round(req_log.elapsed_ms(), 2))
            return _error(str(e), "server_error", 500)
        finally:
            self.metrics.on_request_end(endpoint, start, error=failed)
        return web.json_response(result)

    # =====================================================================
    # Work functions (executor threads)
    # =====================================================================

    def _tokenize(self, body: Dict[str, Any]) -> Dict[str, Any]:
        options = body.get("options") or {}
        messages = body.get("messages")
        if messages:
            text = self.tokenizer.apply_chat_template(messages, bool(body.get("add_generation_prompt", True)))
        else:
            text = body.get("text")
        if not text:
            raise ValueError("Missing 'text' or 'messages'")

        pairs = body.get("text_2")
        if isinstance(text, list) and text and isinstance(text[0], list):
            text = [tuple(p) for p in text]
        encoded = self.tokenizer.encode(text, pairs, options)

        self.metrics.tokens_encoded.inc(int(encoded.attention_mask.sum().item()))
        result = {
            "input_ids": encoded.input_ids.tolist(),
            "attention_mask": encoded.attention_mask.tolist(),
            "count": int(encoded.attention_mask.sum().item()),
        }
        if encoded.token_type_ids is not None:
            result["token_type_ids"] = encoded.token_type_ids.tolist()
        return result

    def _detokenize(self, body: Dict[str, Any]) -> Dict[str, Any]:
        tokens = body.get("tokens")
        if not isinstance(tokens, list):
            raise ValueError("Missing 'tokens' (list of ids or list of id lists)")
        count = sum(len(t) if isinstance(t, list) else 1 for t in tokens)
        text = self.tokenizer.decode(tokens, body.get("options") or {})
        self.metrics.tokens_decoded.inc(count)
        return {"text": text}

    def _chat_template(self, body: Dict[str, Any]) -> Dict[str, Any]:
        messages = body.get("messages")
        if not isinstance(messages, list):
            raise ValueError("Missing 'messages'")
        prompt = self.tokenizer.apply_chat_template(
            messages,
            bool(body.get("add_generation_prompt", True)),
            body.get("chat_template") or "",
        )
        return {"prompt": prompt}

    # =====================================================================
    # Handlers
    # =====================================================================

    async def handle_tokenize(self, request: web.Request) -> web.Response:
        """POST /v1/tokenize"""
        return await self._serve("/v1/tokenize", request, self._tokenize)

    async def handle_detokenize(self, request: web.Request) -> web.Response:
        """POST /v1/detokenize"""
        return await self._serve("/v1/detokenize", request, self._detokenize)

    async def handle_chat_template(self, request: web.Request) -> web.Response:
        """POST /v1/chat/template"""
        return await self._serve("/v1/chat/template", request, self._chat_template)

    async def handle_health(self, request: web.Request) -> web.Response:
        """GET /health"""
        special = self.tokenizer.special_tokens
        return web.json_response({
            "status": "ok",
            "model": self.model_name,
            "uptime_seconds": int(time.monotonic() - self._start_time),
            "requests_served": self.request_counter,
            "encode": self.tokenizer.supports_encode(),
            "decode": self.tokenizer.supports_decode(),
            "chat_template": bool(self.tokenizer.get_chat_template()),
            "special_tokens": {
                "pad": [special.pad_token, special.pad_token_id],
                "bos": [special.bos_token, special.bos_token_id],
                "eos": [special.eos_token, special.eos_token_id],
            },
        })

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """GET /metrics"""
        return web.Response(body=self.metrics.render(), headers={"Content-Type": self.metrics.content_type})

    @web.middleware
    async def cors_middleware(self, request, handler):
        if request.method == "OPTIONS":
            resp = web.Response()
        else:
            resp = await handler(request)
        resp.headers["Access-Control-Allow-Origin"] = "*"
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        return resp

    @web.middleware
    async def auth_middleware(self, request, handler):
        """Check Bearer token on /v1/* endpoints."""
        if self.api_key and request.path.startswith("/v1/"):
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] != self.api_key:
                return _error("Invalid API key", "authentication_error", 401)
        return await handler(request)

    def create_app(self) -> web.Application:
        middlewares = [self.cors_middleware]
        if self.api_key:
            middlewares.append(self.auth_middleware)
        app = web.Application(middlewares=middlewares)
        app.router.add_post("/v1/tokenize", self.handle_tokenize)
        app.router.add_post("/v1/detokenize", self.handle_detokenize)
        app.router.add_post("/v1/chat/template", self.handle_chat_template)
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/metrics", self.handle_metrics)
        return app

    def run(self):
        logger.info(f"paged-genai :: {self.model_name}")
        logger.info(f"  http://{self.host}:{self.port}")
        logger.info("  POST /v1/tokenize | POST /v1/detokenize | POST /v1/chat/template | GET /health | GET /metrics")
        web.run_app(self.create_app(), host=self.host, port=self.port, print=None)
