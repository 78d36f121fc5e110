#!/usr/bin/env python3
"""flowstate CLI entry point."""

import argparse
import sys


def main():
    parser = argparse.ArgumentParser(
        prog="flowstate",
        description="flowstate - Flow graph state engine with assistant diffs"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP/WebSocket server")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to run on (default: $FLOWSTATE_PORT or 8080)")
    serve_parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to")
    serve_parser.add_argument("--sessions-dir", type=str, default=None, help="Directory holding session databases")
    serve_parser.add_argument("--in-memory", action="store_true", help="Keep all state in memory, nothing on disk")

    mcp_parser = subparsers.add_parser("mcp", help="Run as MCP server (stdio)")
    mcp_parser.add_argument("--sessions-dir", type=str, default=None, help="Directory holding session databases")

    args = parser.parse_args()

    if args.command == "serve":
        from flowstate.main import run_server
        run_server(host=args.host, port=args.port, sessions_dir=args.sessions_dir, in_memory=args.in_memory)
    elif args.command == "mcp":
        from flowstate.main import run_mcp_stdio
        run_mcp_stdio(sessions_dir=args.sessions_dir)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
