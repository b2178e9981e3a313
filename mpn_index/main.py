"""MPN 検索インデックス — コマンドラインエントリーポイント.

    python -m mpn_index.main sync [--strategy paginated|bulk]
    python -m mpn_index.main search 7665-PP [--limit 10]
    python -m mpn_index.main stats
    python -m mpn_index.main history [--limit 20]
    python -m mpn_index.main clear
    python -m mpn_index.main sweep
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict
from datetime import datetime

from mpn_index.config import LOG_DIR, SYNC_TYPE_FULL
from mpn_index.errors import MpnIndexError
from mpn_index.service import build_service
from mpn_index.sync import STRATEGIES, STRATEGY_PAGINATED


def setup_logging() -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / f"mpn_index_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mpn_index", description="MPN search index sidecar")
    sub = parser.add_subparsers(dest="command", required=True)

    p_sync = sub.add_parser("sync", help="run a full sync in the foreground")
    p_sync.add_argument("--strategy", choices=STRATEGIES, default=STRATEGY_PAGINATED)

    p_search = sub.add_parser("search", help="exact MPN lookup")
    p_search.add_argument("query")
    p_search.add_argument("--limit", type=int, default=10)

    sub.add_parser("stats", help="index statistics")

    p_history = sub.add_parser("history", help="recent sync jobs")
    p_history.add_argument("--limit", type=int, default=20)

    sub.add_parser("clear", help="remove every indexed variant")
    sub.add_parser("sweep", help="mark orphaned running jobs as failed")
    return parser


def _print_json(obj) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def run(argv: list[str] | None = None) -> int:
    """メイン処理. 終了コードを返す."""
    args = build_parser().parse_args(argv)
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        service = build_service()
    except (MpnIndexError, RuntimeError) as e:
        logger.error("初期化 失敗: %s", e)
        return 1

    try:
        if args.command == "sync":
            logger.info("=== 全件同期 開始 (%s) ===", args.strategy)
            start_time = time.time()
            job = service.run_full_sync(SYNC_TYPE_FULL, args.strategy)
            logger.info("=== 全件同期 完了: %d 件, 所要時間: %.1f 秒 ===",
                        job.indexed_variants, time.time() - start_time)
            _print_json(asdict(job))
        elif args.command == "search":
            _print_json([m.to_dict() for m in service.search(args.query, args.limit)])
        elif args.command == "stats":
            _print_json(asdict(service.stats()))
        elif args.command == "history":
            _print_json([asdict(j) for j in service.get_history(SYNC_TYPE_FULL, args.limit)])
        elif args.command == "clear":
            _print_json({"removed": service.clear_index()})
        elif args.command == "sweep":
            _print_json({"failed": service.sweep_stale_jobs()})
    except (MpnIndexError, RuntimeError) as e:
        logger.error("%s 失敗: %s", args.command, e)
        return 1
    finally:
        service.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(run())
