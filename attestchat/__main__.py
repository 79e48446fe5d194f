"""attestchat CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys


def main() -> None:

    import importlib.metadata

    try:
        version = importlib.metadata.version("attestchat")
    except importlib.metadata.PackageNotFoundError:
        version = "0.1.0"

    parser = argparse.ArgumentParser(
        prog="attestchat",
        description="attestchat: chat with a model that manages Keylime through approved tool calls",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {version}")
    parser.add_argument("--config", default=None, help="Path to custom configuration file (default: ~/.attestchat/config.json)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    serve_parser = subparsers.add_parser("serve", help="Start the web server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")

    ask_parser = subparsers.add_parser("ask", help="One-shot conversation in the terminal")
    ask_parser.add_argument("query", nargs="+", help="What to ask")
    ask_parser.add_argument("--yes", "-y", action="store_true", help="Approve every tool request automatically")

    subparsers.add_parser("status", help="Check status of a running server")
    subparsers.add_parser("tools", help="List the tools advertised by the tool server")

    args = parser.parse_args()

    from attestchat.logger import setup_logging
    from attestchat.proxy.config import Config

    cfg = Config.load(args.config)
    level = logging.DEBUG if args.debug else logging.INFO
    setup_logging(cfg.log_file, level=level, console=args.command != "ask")

    if args.command == "serve":
        _run_serve(args, cfg)
    elif args.command == "ask":
        sys.exit(asyncio.run(_run_ask(args, cfg)))
    elif args.command == "status":
        sys.exit(asyncio.run(_run_status(cfg)))
    elif args.command == "tools":
        sys.exit(asyncio.run(_run_tools(cfg)))
    else:
        parser.print_help()
        sys.exit(1)


def _run_serve(args, cfg) -> None:
    """Start the web server."""
    from attestchat.proxy.server import run_server

    cfg = cfg.with_overrides(proxy_host=args.host, proxy_port=args.port)
    print(f"attestchat listening on http://{cfg.proxy_host}:{cfg.proxy_port}", flush=True)
    run_server(cfg)


async def _run_ask(args, cfg) -> int:
    """Run one query end-to-end, printing every event as it arrives."""
    from attestchat.proxy.agent.models import (
        ASSISTANT_MESSAGE, DONE, ERROR, TOOL_DENIED, TOOL_EXECUTING, TOOL_REQUEST, TOOL_RESULT,
    )
    from attestchat.proxy.server import Services

    query = " ".join(args.query).strip()
    if not query:
        print("Error: query cannot be empty", file=sys.stderr)
        return 2

    svc = Services.build(cfg)
    await svc.start()
    if not svc.tools.is_running:
        print(f"[!] Tool server '{cfg.tool_server_command}' is not running; continuing without tools.")

    exit_code = 0
    try:
        async with svc.bus.subscribe() as events:
            svc.agent.submit(query)
            async for event in events:
                data = event.data
                if event.type == ASSISTANT_MESSAGE:
                    print(f"\n{data['text']}")
                elif event.type == TOOL_REQUEST:
                    print(f"\n[Tool request] {data['tool_name']} {data['tool_args']}")
                    if args.yes or await _confirm("Approve? [y/N] "):
                        svc.agent.approve()
                    else:
                        svc.agent.deny()
                elif event.type == TOOL_EXECUTING:
                    print(f"[Tool] {data['text']}")
                elif event.type == TOOL_RESULT:
                    label = "Tool failed" if data.get("is_error") else "Tool result"
                    print(f"[{label}]\n{data['text']}")
                elif event.type == TOOL_DENIED:
                    print(f"[Denied] {data['text']}")
                elif event.type == ERROR:
                    print(f"[Error] {data['text']}", file=sys.stderr)
                    exit_code = 1
                elif event.type == DONE:
                    break
    finally:
        await svc.close()
    return exit_code


async def _confirm(prompt: str) -> bool:
    answer = await asyncio.to_thread(input, prompt)
    return answer.strip().lower() in ("y", "yes")


async def _run_status(cfg) -> int:
    """Query a running server's /api/status."""
    import httpx

    url = f"http://{cfg.proxy_host}:{cfg.proxy_port}/api/status"
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPError as e:
        print(f"attestchat server at {url}: offline ({e})")
        return 1

    ollama = data.get("ollama", {})
    tools = data.get("tool_server", {})
    agent = data.get("agent", {})
    print(f"Server       {data.get('status')}")
    print(f"Ollama       {'online' if ollama.get('connected') else 'offline'}  {ollama.get('url')} ({ollama.get('model')})")
    print(f"Tool server  {'running' if tools.get('running') else 'stopped'}  {tools.get('command')} ({tools.get('tools', 0)} tools)")
    print(f"Agent        {agent.get('phase')}  turn {agent.get('turns')}/{agent.get('max_turns')}  {agent.get('message_count')} messages")
    return 0


async def _run_tools(cfg) -> int:
    """Start the tool server, print its catalog, and stop it."""
    from attestchat.proxy.agent import ToolCatalog
    from attestchat.proxy.toolserver import ToolServer, ToolServerError

    server = ToolServer.from_config(cfg)
    try:
        await server.start()
        catalog = ToolCatalog()
        catalog.load(ToolCatalog.from_raw(await server.list_tools()))
    except ToolServerError as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1
    finally:
        await server.close()

    for tool in catalog.describe():
        print(f"{tool['name']}\n    {tool['description']}")
        print(f"    parameters: {json.dumps(tool['parameters'])}")
    return 0


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
