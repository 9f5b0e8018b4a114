#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from google.cloud import firestore

DEFAULT_CONFIG: dict[str, Any] = {
    "schema_version": 1,
    "scaling_ratio": 0.1,
    "sizing_basis": "balance",
    "min_trade_amount": 1_000_000,
    "native_reserve_lamports": 20_000_000,
    "max_price_impact_bps": 100.0,
    "slippage_bps": 50,
    "quote_ttl_seconds": 10.0,
    "route_max_attempts": 3,
    "route_retry_backoff_seconds": 0.5,
    "max_requotes": 2,
    "build_max_attempts": 3,
    "build_retry_backoff_seconds": 0.5,
    "broadcast_max_attempts": 3,
    "broadcast_retry_backoff_seconds": 0.8,
    "confirm_timeout_seconds": 45.0,
    "confirm_poll_interval_seconds": 1.0,
    "replication_enabled": False,
}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(float(raw.strip()))
    except ValueError:
        return default


def parse_args() -> argparse.Namespace:
    bot_collection = (os.getenv("BOT_COLLECTION", "bots").strip("/") or "bots")
    bot_id = (os.getenv("BOT_ID", "copy-trader").strip() or "copy-trader").replace("/", "-")
    default_config_doc = os.getenv("FIRESTORE_CONFIG_DOC") or f"{bot_collection}/{bot_id}/config/runtime"

    parser = argparse.ArgumentParser(
        description="Seed the runtime config document of the copy trader in Firestore.",
    )

    parser.add_argument(
        "--project-id",
        default=os.getenv("FIRESTORE_PROJECT_ID", ""),
        help="GCP project id. Defaults to FIRESTORE_PROJECT_ID from env.",
    )
    parser.add_argument(
        "--config-doc",
        default=default_config_doc,
        help="Firestore target path. If odd segments are given, a doc id is auto-appended.",
    )
    parser.add_argument(
        "--leaf-doc-id",
        default=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
        help="Doc id to append when --config-doc is a collection path.",
    )
    parser.add_argument(
        "--credentials",
        default=os.getenv("FIREBASE_CREDENTIALS", ""),
        help="Service account json path. Defaults to FIREBASE_CREDENTIALS from env.",
    )
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Replace the full document (merge=false).",
    )
    parser.add_argument(
        "--print-only",
        action="store_true",
        help="Print resolved doc path and payload without writing to Firestore.",
    )

    parser.add_argument(
        "--schema-version",
        type=int,
        default=max(1, env_int("CONFIG_SCHEMA_VERSION", DEFAULT_CONFIG["schema_version"])),
    )
    parser.add_argument("--scaling-ratio", type=float, default=DEFAULT_CONFIG["scaling_ratio"])
    parser.add_argument(
        "--sizing-basis",
        choices=("balance", "source"),
        default=DEFAULT_CONFIG["sizing_basis"],
    )
    parser.add_argument("--min-trade-amount", type=int, default=DEFAULT_CONFIG["min_trade_amount"])
    parser.add_argument(
        "--native-reserve-lamports",
        type=int,
        default=DEFAULT_CONFIG["native_reserve_lamports"],
    )
    parser.add_argument(
        "--max-price-impact-bps",
        type=float,
        default=DEFAULT_CONFIG["max_price_impact_bps"],
    )
    parser.add_argument("--slippage-bps", type=int, default=DEFAULT_CONFIG["slippage_bps"])
    parser.add_argument("--quote-ttl-seconds", type=float, default=DEFAULT_CONFIG["quote_ttl_seconds"])
    parser.add_argument("--route-max-attempts", type=int, default=DEFAULT_CONFIG["route_max_attempts"])
    parser.add_argument(
        "--route-retry-backoff-seconds",
        type=float,
        default=DEFAULT_CONFIG["route_retry_backoff_seconds"],
    )
    parser.add_argument("--max-requotes", type=int, default=DEFAULT_CONFIG["max_requotes"])
    parser.add_argument("--build-max-attempts", type=int, default=DEFAULT_CONFIG["build_max_attempts"])
    parser.add_argument(
        "--build-retry-backoff-seconds",
        type=float,
        default=DEFAULT_CONFIG["build_retry_backoff_seconds"],
    )
    parser.add_argument(
        "--broadcast-max-attempts",
        type=int,
        default=DEFAULT_CONFIG["broadcast_max_attempts"],
    )
    parser.add_argument(
        "--broadcast-retry-backoff-seconds",
        type=float,
        default=DEFAULT_CONFIG["broadcast_retry_backoff_seconds"],
    )
    parser.add_argument(
        "--confirm-timeout-seconds",
        type=float,
        default=DEFAULT_CONFIG["confirm_timeout_seconds"],
    )
    parser.add_argument(
        "--confirm-poll-interval-seconds",
        type=float,
        default=DEFAULT_CONFIG["confirm_poll_interval_seconds"],
    )
    parser.add_argument(
        "--replication-enabled",
        action="store_true",
        help="Set replication_enabled=true. Omit to keep replication paused.",
    )

    return parser.parse_args()


def resolve_credentials_path(raw_path: str, repo_root: Path) -> str:
    path = raw_path.strip()
    if not path:
        return ""

    if path.startswith("/app/"):
        mapped = repo_root / path.removeprefix("/app/")
        if mapped.exists():
            return str(mapped)

    return path


def normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
    normalized = doc_path.strip("/")
    if not normalized:
        raise ValueError("FIRESTORE_CONFIG_DOC is empty.")

    segments = [part for part in normalized.split("/") if part]
    if len(segments) % 2 == 0:
        return normalized, False

    return f"{normalized}/{leaf_doc_id}", True


def build_payload(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "schema_version": max(1, int(args.schema_version)),
        "scaling_ratio": min(1.0, max(0.0, float(args.scaling_ratio))),
        "sizing_basis": str(args.sizing_basis),
        "min_trade_amount": max(0, int(args.min_trade_amount)),
        "native_reserve_lamports": max(0, int(args.native_reserve_lamports)),
        "max_price_impact_bps": max(0.0, float(args.max_price_impact_bps)),
        "slippage_bps": max(1, int(args.slippage_bps)),
        "quote_ttl_seconds": float(args.quote_ttl_seconds),
        "route_max_attempts": max(1, int(args.route_max_attempts)),
        "route_retry_backoff_seconds": float(args.route_retry_backoff_seconds),
        "max_requotes": max(0, int(args.max_requotes)),
        "build_max_attempts": max(1, int(args.build_max_attempts)),
        "build_retry_backoff_seconds": float(args.build_retry_backoff_seconds),
        "broadcast_max_attempts": max(1, int(args.broadcast_max_attempts)),
        "broadcast_retry_backoff_seconds": float(args.broadcast_retry_backoff_seconds),
        "confirm_timeout_seconds": float(args.confirm_timeout_seconds),
        "confirm_poll_interval_seconds": float(args.confirm_poll_interval_seconds),
        "replication_enabled": bool(args.replication_enabled),
    }


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")

    args = parse_args()

    target_doc_path, path_auto_fixed = normalize_doc_path(args.config_doc, args.leaf_doc_id)
    payload = build_payload(args)

    if path_auto_fixed:
        print(
            f"[info] --config-doc '{args.config_doc}' is a collection path. "
            f"Using document path '{target_doc_path}'."
        )

    credentials_path = resolve_credentials_path(args.credentials, repo_root)
    if credentials_path:
        os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = credentials_path

    project_id = args.project_id.strip()
    if not project_id:
        raise ValueError("FIRESTORE_PROJECT_ID is required (set env or --project-id).")

    print(f"[info] project_id={project_id}")
    print(f"[info] target_doc={target_doc_path}")
    print(f"[info] merge={not args.replace}")
    print("[info] payload=")
    print(json.dumps(payload, ensure_ascii=False, indent=2))

    if args.print_only:
        print("[info] print-only mode: skipped Firestore write")
        return

    client = firestore.Client(project=project_id)
    doc_ref = client.document(target_doc_path)
    doc_ref.set(payload, merge=not args.replace)

    print("[ok] Firestore config seeded successfully")


if __name__ == "__main__":
    main()
