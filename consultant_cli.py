import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _headers(args: argparse.Namespace) -> Dict[str, str]:
    headers = {"X-Tenant-ID": args.tenant}
    if args.user:
        headers["X-User-ID"] = args.user
    return headers


def _print_meta(event: dict) -> None:
    print()
    print(f"\nConfidence: {event.get('confidence', 'unknown')}")
    links = (event.get("citations") or []) + (event.get("externalLinks") or [])
    for link in links:
        print(f"- {link.get('label')} {link.get('url') or ''}".rstrip())
    if event.get("conversationId"):
        print(f"Conversation: {event['conversationId']}")


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"message": args.message, "conversation_id": args.conversation, "mode": args.mode}
    exit_code = 0
    with httpx.Client(timeout=httpx.Timeout(args.timeout, connect=10)) as client:
        with client.stream("POST", _join_url(base, "/api/chat"), json=payload, headers=_headers(args)) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Request failed: HTTP {resp.status_code} {resp.text}")
                return 1
            for line in resp.iter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == "[DONE]":
                    break
                event = json.loads(data)
                kind = event.get("type")
                if kind == "token":
                    print(event.get("content", ""), end="", flush=True)
                elif kind == "tool_start" and args.verbose:
                    print(f"\n[tool] {event.get('tool')} ...", file=sys.stderr)
                elif kind == "tool_end" and args.verbose:
                    suffix = f" failed: {event['error']}" if event.get("error") else " done"
                    print(f"[tool] {event.get('tool')}{suffix}", file=sys.stderr)
                elif kind == "meta":
                    _print_meta(event)
                elif kind == "error":
                    print(f"\nError: {event.get('message')}")
                    exit_code = 1
    return exit_code


def run_conversations(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/conversations"), headers=_headers(args), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list conversations: HTTP {resp.status_code}")
            return 1
        conversations = resp.json().get("conversations") or []
    if not conversations:
        print("No conversations.")
    for convo in conversations:
        print(f"{convo['id']}  {convo.get('updated_at', '')}  {convo.get('title', '')}")
    return 0


def run_ingest(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    documents = json.loads(Path(args.path).read_text())
    if isinstance(documents, dict):
        documents = documents.get("documents") or []
    payload = {"documents": documents, "tenant_id": args.target_tenant}
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/knowledge"), json=payload, headers=_headers(args), timeout=300)
        if resp.status_code >= 400:
            print(f"Ingest failed: HTTP {resp.status_code} {resp.text}")
            return 1
        data = resp.json()
    print(f"Stored {data.get('chunks', 0)} chunks from {data.get('documents', 0)} documents for {data.get('tenant_id')}.")
    return 0


def run_config(args: argparse.Namespace) -> int:
    from consultant.config import load_settings, save_settings

    path = Path(args.path)
    settings = load_settings(config_path=path)
    save_settings(settings, config_path=path)
    print(json.dumps(settings.to_safe_dict(), indent=2))
    print(f"Wrote {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Skipper consultant CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--tenant", default="default", help="Tenant id sent as X-Tenant-ID")
    parser.add_argument("--user", default="", help="User id sent as X-User-ID")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Ask the consultant and stream the answer")
    ask.add_argument("message", help="Question to ask")
    ask.add_argument("--conversation", default=None, help="Continue an existing conversation")
    ask.add_argument("--mode", default=None, choices=["docs", "heartbeat"], help="Restrict the tool surface")
    ask.add_argument("--timeout", type=float, default=300, help="Max seconds to wait for the answer")
    ask.add_argument("-v", "--verbose", action="store_true", help="Show tool activity on stderr")

    subparsers.add_parser("conversations", help="List your conversations")

    ingest = subparsers.add_parser("ingest", help="Upload pre-chunked documents to the knowledge base")
    ingest.add_argument("path", help="JSON file with a list of {source_url, source_title, chunks}")
    ingest.add_argument("--target-tenant", default=None, help="Store under this tenant instead of --tenant")

    config = subparsers.add_parser("config", help="Write the effective settings to a config file")
    config.add_argument("--path", default="config.json", help="Config file to write")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "conversations":
        return run_conversations(args)
    if args.command == "ingest":
        return run_ingest(args)
    if args.command == "config":
        return run_config(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
