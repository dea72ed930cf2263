"""`localllm`: on-device text generation CLI.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from apps.cli.output import format_table, print_json, response_to_dict
from localllm.engine import (
    CHAT_RESPONSE_LENGTH,
    CODE_RESPONSE_LENGTH,
    EngineConfig,
    GenerateRequest,
    LoadError,
    RepetitionGuardConfig,
    SamplerConfig,
    UnknownBackendError,
    create_engine,
    list_backends,
)
from localllm.engine.registry import DEFAULT_BACKEND
from localllm.runtime import (
    check_backend_available,
    default_thread_count,
    is_llama_cpp_available,
    is_transformers_available,
)

_AVAILABILITY = {
    "llama_cpp": is_llama_cpp_available,
    "transformers": is_transformers_available,
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="localllm", description="On-device text generation")
    p.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: %(default)s)",
    )

    sub = p.add_subparsers(dest="command")

    gen = sub.add_parser("generate", help="Generate a response for one prompt")
    gen.add_argument("prompt", help="Prompt text ('-' reads stdin)")
    gen.add_argument("--model", required=True, help="Path to the model file or directory")
    gen.add_argument(
        "--backend",
        default=DEFAULT_BACKEND,
        help="Engine backend (default: %(default)s)",
    )
    gen.add_argument("--n-ctx", type=int, default=2048, help="Context window in tokens (default: 2048)")
    gen.add_argument(
        "--threads",
        type=int,
        default=None,
        help=f"Decode threads (default: {default_thread_count()})",
    )
    gen.add_argument("--gpu-layers", type=int, default=0, help="Layers to offload to GPU (default: 0)")
    gen.add_argument(
        "--max-new-tokens",
        type=int,
        default=512,
        help="Upper bound on generated tokens (default: 512)",
    )
    length = gen.add_mutually_exclusive_group()
    length.add_argument(
        "--max-response-length",
        type=int,
        default=None,
        help=f"Stop once the response exceeds this many characters (default: {CHAT_RESPONSE_LENGTH})",
    )
    length.add_argument(
        "--code",
        action="store_true",
        help=f"Use the long code-generation response limit ({CODE_RESPONSE_LENGTH} characters)",
    )
    gen.add_argument("--temperature", type=float, default=0.8, help="Sampling temperature (default: 0.8)")
    gen.add_argument("--top-k", type=int, default=40, help="Top-k filtering (default: 40)")
    gen.add_argument("--top-p", type=float, default=0.95, help="Top-p (nucleus) filtering (default: 0.95)")
    gen.add_argument(
        "--sample",
        action="store_true",
        help="Draw from the filtered distribution instead of taking the most likely token",
    )
    gen.add_argument("--seed", type=int, default=None, help="RNG seed for --sample")
    gen.add_argument(
        "--no-repetition-guard",
        action="store_true",
        help="Disable the repetition early-stop",
    )
    gen.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    backends = sub.add_parser("backends", help="List engine backends")
    backends.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    return p


def _engine_config(args: argparse.Namespace) -> EngineConfig:
    if args.code:
        max_response_length = CODE_RESPONSE_LENGTH
    elif args.max_response_length is not None:
        max_response_length = int(args.max_response_length)
    else:
        max_response_length = CHAT_RESPONSE_LENGTH

    return EngineConfig(
        backend=args.backend,
        n_ctx=int(args.n_ctx),
        n_threads=args.threads,
        gpu_layers=int(args.gpu_layers),
        max_new_tokens=int(args.max_new_tokens),
        max_response_length=max_response_length,
        sampler=SamplerConfig(
            top_k=int(args.top_k),
            top_p=float(args.top_p),
            temperature=float(args.temperature),
            final="dist" if args.sample else "greedy",
            seed=args.seed,
        ),
        repetition=RepetitionGuardConfig(enabled=not args.no_repetition_guard),
    )


def cmd_generate(args: argparse.Namespace) -> int:
    prompt = sys.stdin.read() if args.prompt == "-" else args.prompt

    try:
        config = _engine_config(args)
        config.validate()
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    if args.backend in _AVAILABILITY:
        try:
            check_backend_available(args.backend)
        except ImportError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 2

    if not args.json:
        print(f"Loading {args.model} ({args.backend}, n_ctx={config.n_ctx})...", file=sys.stderr, flush=True)
    try:
        engine = create_engine(args.model, backend=args.backend, config=config)
    except UnknownBackendError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except LoadError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    try:
        response = engine.generate(GenerateRequest(prompt=prompt))
    except KeyboardInterrupt:
        engine.cancel()
        print("\nInterrupted.", file=sys.stderr, flush=True)
        return 1
    finally:
        engine.shutdown()

    if args.json:
        print_json(response_to_dict(response))
    else:
        print(response.display_text, flush=True)
        if response.ok:
            reason = response.stop_reason.value if response.stop_reason is not None else "unknown"
            timing = response.timing
            rate = f", {timing.tok_per_s:.1f} tok/s" if timing is not None and timing.tok_per_s else ""
            print(
                f"[{reason}] {response.prompt_tokens} prompt + {response.completion_tokens} completion tokens{rate}",
                file=sys.stderr,
                flush=True,
            )
    return 0 if response.ok else 1


def cmd_backends(args: argparse.Namespace) -> int:
    rows = []
    for name in list_backends():
        check = _AVAILABILITY.get(name)
        available = check() if check is not None else True
        rows.append({"name": name, "available": available, "default": name == DEFAULT_BACKEND})

    if args.json:
        print_json({"backends": rows})
        return 0

    print(
        format_table(
            ["BACKEND", "AVAILABLE", "DEFAULT"],
            [[r["name"], "yes" if r["available"] else "no", "*" if r["default"] else ""] for r in rows],
        )
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "generate":
        return cmd_generate(args)
    if args.command == "backends":
        return cmd_backends(args)
    if args.command is None:
        parser.print_help()
        return 2
    parser.error(f"Unknown command: {args.command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
