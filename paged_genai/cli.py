"""
paged-genai :: CLI

Usage:
    paged-genai tokenize <models_path> <text> [--text-2 TEXT] [--no-special-tokens] [--max-length N]
    paged-genai detokenize <models_path> <id> [<id> ...] [--keep-special-tokens]
    paged-genai chat <models_path> --message user:Hi [--message assistant:Hello] [--template FILE]
    paged-genai kv-config <config.json> [--per-layer-cache-control] [--allow-cache-rotation]
    paged-genai serve <models_path> [--port 8000] [--host 0.0.0.0]

Global flags (--device, --num-requests, --log-level, --log-json) override
the PAGED_GENAI_* environment variables.

INL - 2025
"""

import argparse
import json
import sys


def _context(args):
    from paged_genai.core.backend import BackendContext
    from paged_genai.core.config import RuntimeConfig

    config = RuntimeConfig.from_env()
    if args.device:
        config.device = args.device.upper()
    if args.num_requests:
        config.num_requests = args.num_requests
    return BackendContext(config)


def _load_tokenizer(args):
    from paged_genai.core.tokenizer import Tokenizer
    return Tokenizer(args.models_path, context=_context(args))


def cmd_tokenize(args):
    """Print input_ids / attention_mask for one text (or text pair)."""
    tokenizer = _load_tokenizer(args)
    options = {}
    if args.no_special_tokens:
        options["add_special_tokens"] = False
    if args.max_length is not None:
        options["max_length"] = args.max_length
    if args.pad_to_max_length:
        options["pad_to_max_length"] = True

    prompts_2 = [args.text_2] if args.text_2 is not None else None
    encoded = tokenizer.encode([args.text], prompts_2, options)
    out = {
        "input_ids": encoded.input_ids.tolist(),
        "attention_mask": encoded.attention_mask.tolist(),
    }
    if encoded.token_type_ids is not None:
        out["token_type_ids"] = encoded.token_type_ids.tolist()
    print(json.dumps(out))


def cmd_detokenize(args):
    tokenizer = _load_tokenizer(args)
    print(tokenizer.decode(args.ids, skip_special_tokens=not args.keep_special_tokens))


def cmd_chat(args):
    """Render a chat history with the model's (or a given) template."""
    tokenizer = _load_tokenizer(args)
    history = [{"role": role, "content": content} for role, content in args.message]
    template = ""
    if args.template:
        with open(args.template, "r", encoding="utf-8") as f:
            template = f.read()
    print(tokenizer.apply_chat_template(history, not args.no_generation_prompt, template))


def cmd_kv_config(args):
    """Build the stateful attention graph for a config.json, rewrite it, print the head table."""
    from dataclasses import asdict
    from paged_genai.graph.builder import AttentionGraphConfig, build_stateful_attention_graph
    from paged_genai.transformations.paged_attention import apply_paged_attention_transformations
    from paged_genai.core.kv_cache import PagedKVCache

    config = AttentionGraphConfig.from_json(args.config)
    graph = build_stateful_attention_graph(config)
    kv_heads = apply_paged_attention_transformations(
        graph,
        per_layer_cache_control=args.per_layer_cache_control,
        allow_cache_rotation=args.allow_cache_rotation,
    )

    print(f"paged-genai :: {args.config}")
    print(f"  inputs: {', '.join(p.friendly_name for p in graph.get_parameters())}")
    for i, c in enumerate(kv_heads):
        print(f"  layer {i:3d}: K {c.num_k_heads}x{c.k_head_size}  V {c.num_v_heads}x{c.v_head_size}")

    if args.num_blocks:
        cache = PagedKVCache(
            kv_heads,
            block_size=args.block_size,
            num_blocks=args.num_blocks,
            dtype=config.dtype,
            layout=args.layout,
        )
        print(f"  cache: {json.dumps(cache.get_stats())}")
    if args.json:
        print(json.dumps([asdict(c) for c in kv_heads]))


def cmd_serve(args):
    from paged_genai.api.server import TokenizerServer

    tokenizer = _load_tokenizer(args)
    server = TokenizerServer(
        tokenizer,
        model_name=args.model_name or args.models_path,
        host=args.host,
        port=args.port,
        api_key=args.api_key,
    )
    server.run()


def _message(value: str):
    role, sep, content = value.partition(":")
    if not sep:
        raise argparse.ArgumentTypeError("expected role:content")
    return role, content


def main(argv=None):
    from paged_genai.core.config import RuntimeConfig
    from paged_genai.core.logging import setup_logging

    parser = argparse.ArgumentParser(prog="paged-genai", description="Paged attention graphs and tokenizer sessions")
    parser.add_argument("--device", default=None, help="Compile device (default: $PAGED_GENAI_DEVICE or CPU)")
    parser.add_argument("--num-requests", type=int, default=0, help="Infer requests per compiled model")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-json", action="store_true", help="JSON log lines")
    sub = parser.add_subparsers(dest="command")

    # tokenize
    p_tok = sub.add_parser("tokenize", help="Encode text to token ids")
    p_tok.add_argument("models_path")
    p_tok.add_argument("text")
    p_tok.add_argument("--text-2", default=None, help="Second text of a pair")
    p_tok.add_argument("--no-special-tokens", action="store_true")
    p_tok.add_argument("--max-length", type=int, default=None)
    p_tok.add_argument("--pad-to-max-length", action="store_true")
    p_tok.set_defaults(func=cmd_tokenize)

    # detokenize
    p_detok = sub.add_parser("detokenize", help="Decode token ids to text")
    p_detok.add_argument("models_path")
    p_detok.add_argument("ids", type=int, nargs="+")
    p_detok.add_argument("--keep-special-tokens", action="store_true")
    p_detok.set_defaults(func=cmd_detokenize)

    # chat
    p_chat = sub.add_parser("chat", help="Render a chat history")
    p_chat.add_argument("models_path")
    p_chat.add_argument("--message", type=_message, action="append", required=True, help="role:content")
    p_chat.add_argument("--no-generation-prompt", action="store_true")
    p_chat.add_argument("--template", default=None, help="Path to a chat template overriding the model's")
    p_chat.set_defaults(func=cmd_chat)

    # kv-config
    p_kv = sub.add_parser("kv-config", help="Per-layer KV head geometry after the paged-attention rewrite")
    p_kv.add_argument("config", help="HuggingFace config.json")
    p_kv.add_argument("--per-layer-cache-control", action="store_true")
    p_kv.add_argument("--allow-cache-rotation", action="store_true")
    p_kv.add_argument("--num-blocks", type=int, default=0, help="Also size a KV cache with this many blocks")
    p_kv.add_argument("--block-size", type=int, default=16)
    p_kv.add_argument("--layout", default="token_major", choices=["token_major", "head_major"])
    p_kv.add_argument("--json", action="store_true")
    p_kv.set_defaults(func=cmd_kv_config)

    # serve
    p_serve = sub.add_parser("serve", help="Start the tokenizer HTTP server")
    p_serve.add_argument("models_path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--model-name", default=None)
    p_serve.add_argument("--api-key", default=None, help="Require Bearer token on /v1/*")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    env = RuntimeConfig.from_env()
    setup_logging(args.log_level or env.log_level, json_output=args.log_json or env.log_json)
    args.func(args)


if __name__ == "__main__":
    main()
