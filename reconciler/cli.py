from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional
from urllib import error, request

import uvicorn

from reconciler.config import get_settings
from reconciler.logger import configure_logging
from reconciler.runtime import build_loop
from reconciler.services.metadata_state import (
    MetadataFacts,
    MigrationPhase,
    configuration_state,
    next_phase,
    parse_intent,
)


def _api_request(
    *,
    base_url: str,
    path: str,
    method: str = "GET",
    json_body: Optional[Dict[str, Any]] = None,
) -> Any:
    url = base_url.rstrip("/") + path
    headers: Dict[str, str] = {"Accept": "application/json"}
    data: Optional[bytes] = None

    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    req = request.Request(url=url, method=method.upper(), data=data, headers=headers)
    try:
        with request.urlopen(req, timeout=60) as response:
            body = response.read().decode("utf-8")
            return json.loads(body) if body else {}
    except error.HTTPError as exc:
        payload = exc.read().decode("utf-8")
        detail = payload
        try:
            parsed = json.loads(payload)
            if isinstance(parsed, dict) and "detail" in parsed:
                detail = str(parsed["detail"])
        except json.JSONDecodeError:
            pass
        raise RuntimeError(f"HTTP {exc.code}: {detail}") from exc


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def cmd_serve(args: argparse.Namespace) -> int:
    settings = get_settings()
    uvicorn.run(
        "reconciler.main:app",
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        log_config=None,
    )
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    if args.namespace and args.name:
        data = _api_request(base_url=args.api_url, path=f"/clusters/{args.namespace}/{args.name}")
    else:
        data = _api_request(base_url=args.api_url, path="/clusters")
    _print_json(data)
    return 0


def cmd_apply(args: argparse.Namespace) -> int:
    body = json.loads(Path(args.file).read_text(encoding="utf-8"))
    if not isinstance(body, dict):
        raise RuntimeError(f"{args.file} must contain a JSON object")
    data = _api_request(
        base_url=args.api_url,
        path=f"/clusters/{args.namespace}/{args.name}",
        method="PUT",
        json_body=body,
    )
    _print_json(data)
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    data = _api_request(
        base_url=args.api_url,
        path=f"/clusters/{args.namespace}/{args.name}/reconcile",
        method="POST",
    )
    _print_json(data)
    return 0 if data.get("ok") else 2


async def _reconcile_once() -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)
    loop = build_loop(settings)
    try:
        results = await loop.reconcile_all()
    finally:
        await loop.stop()
    for result in results:
        ready = result.status.ready_condition()
        resource = result.context.resource
        print(
            f"{resource.namespace}/{resource.name}: "
            f"{ready.type if ready else 'Unknown'} {ready.reason if ready else ''}".rstrip()
        )
    return 0 if all(item.ok for item in results) else 2


def cmd_reconcile_once(args: argparse.Namespace) -> int:
    return asyncio.run(_reconcile_once())


def cmd_migration_next(args: argparse.Namespace) -> int:
    phase = MigrationPhase(args.phase)
    intent = parse_intent(args.intent)
    facts = MetadataFacts(
        controller_pool_exists=args.controller_pool,
        migration_complete=args.migration_complete,
        cutover_complete=args.cutover_complete,
        legacy_store_present=not args.legacy_store_removed,
    )
    transition = next_phase(phase, intent, facts)
    _print_json(
        {
            "phase": transition.phase.value,
            "configuration": configuration_state(transition.phase, intent).value,
            "warnings": list(transition.warnings),
        }
    )
    return 0


def _add_cluster_args(parser: argparse.ArgumentParser, *, required: bool = True) -> None:
    parser.add_argument("--namespace", required=required)
    parser.add_argument("--name", required=required)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cluster-reconciler")
    parser.add_argument("--api-url", default="http://127.0.0.1:8080")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the API and the periodic reconcile loop")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    status = sub.add_parser("status", help="Show published cluster status")
    _add_cluster_args(status, required=False)
    status.set_defaults(func=cmd_status)

    apply = sub.add_parser("apply", help="Store a cluster resource from a JSON file")
    _add_cluster_args(apply)
    apply.add_argument("-f", "--file", required=True)
    apply.set_defaults(func=cmd_apply)

    reconcile = sub.add_parser("reconcile", help="Run one reconcile cycle through the API")
    _add_cluster_args(reconcile)
    reconcile.set_defaults(func=cmd_reconcile)

    reconcile_once = sub.add_parser(
        "reconcile-once",
        help="Reconcile every stored cluster once in-process and exit",
    )
    reconcile_once.set_defaults(func=cmd_reconcile_once)

    migration_next = sub.add_parser(
        "migration-next",
        help="Show the next metadata migration phase for the given inputs",
    )
    migration_next.add_argument("--phase", required=True, choices=[item.value for item in MigrationPhase])
    migration_next.add_argument("--intent")
    migration_next.add_argument("--controller-pool", action="store_true")
    migration_next.add_argument("--migration-complete", action="store_true")
    migration_next.add_argument("--cutover-complete", action="store_true")
    migration_next.add_argument("--legacy-store-removed", action="store_true")
    migration_next.set_defaults(func=cmd_migration_next)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        exit_code = args.func(args)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
