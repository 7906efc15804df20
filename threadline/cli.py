#!/usr/bin/env python3
"""
threadline CLI.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the threadline API server
    models          ls              List models with a configured provider key
    ask             chat            Stream a one-shot answer to stdout
    contexts        ps              Show live contexts on a running server
"""

import argparse
import asyncio
import sys

from threadline import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the threadline API server."""
    import uvicorn
    from threadline.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  threadline {__version__} listening on {host}:{port}")
    print(f"  Default model: {cfg['ai']['default_model']}")
    print()

    uvicorn.run(
        "threadline.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_models(args):
    """List models whose provider has a key configured."""
    from threadline.config import get_config
    from threadline.orchestrator import Orchestrator

    orch = Orchestrator.from_config(get_config())
    models = orch.get_available_models()
    if not models:
        print("  No providers configured. Set OPENAI_API_KEY, ANTHROPIC_API_KEY or GOOGLE_AI_API_KEY.")
        return
    for model in models:
        marker = "*" if model == orch.default_model else " "
        print(f"  {marker} {model}")


async def _ask(prompt: str, model: str | None, system: str | None) -> int:
    from threadline.config import get_config
    from threadline.errors import ThreadlineError
    from threadline.orchestrator import Orchestrator

    orch = Orchestrator.from_config(get_config())
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    try:
        async for chunk in orch.stream_chat(messages, model=model):
            if chunk.content:
                sys.stdout.write(chunk.content)
                sys.stdout.flush()
    except ThreadlineError as e:
        print(f"\n  ✗  {e}", file=sys.stderr)
        return 1
    print()
    return 0


def cmd_ask(args):
    """Stream a one-shot answer."""
    code = asyncio.run(_ask(" ".join(args.prompt), args.model, args.system))
    if code:
        sys.exit(code)


def cmd_contexts(args):
    """Show live contexts on a running server."""
    import httpx

    url = (args.url or "http://localhost:8000").rstrip("/")
    try:
        resp = httpx.get(f"{url}/api/contexts", timeout=5)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"  ✗  Cannot reach threadline at {url}: {e}")
        sys.exit(1)

    rows = resp.json().get("data", [])
    if not rows:
        print("  No live contexts.")
        return
    for row in rows:
        print(
            f"  {row['conversation_id']}  user={row['user_id']}  "
            f"messages={row['message_count']}  tokens={row['total_tokens']}"
        )


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threadline",
        description="threadline: multi-provider conversational backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"threadline {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"], "Start the threadline API server", cmd_serve, setup_serve)

    _add_command(sub, ["models", "ls"], "List available models", cmd_models)

    def setup_ask(p):
        p.add_argument("prompt", nargs="+", help="Prompt text")
        p.add_argument("--model", "-m", default=None, help="Model id (default: from config)")
        p.add_argument("--system", "-s", default=None, help="System prompt")

    _add_command(sub, ["ask", "chat"], "Stream a one-shot answer to stdout", cmd_ask, setup_ask)

    def setup_contexts(p):
        p.add_argument("--url", "-u", default=None, help="Server URL (default: http://localhost:8000)")

    _add_command(sub, ["contexts", "ps"], "Show live contexts on a running server", cmd_contexts, setup_contexts)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
