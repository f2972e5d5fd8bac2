import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import asdict
from typing import List, Optional

from services.config import Config, DEFAULT_STAGE_ORDER, load_config
from services.logging import setup_logging
from services.database import Database
from services.alert_store import AlertStore
from services.llm import OllamaClient
from services.scheduler import next_tick
from workflows.orchestrator import build_orchestrator, pipeline_status
from workflows.scoring import request_rescore
from workflows.trends import TREND_STATUSES, latest_trends, topic_history
from delivery.file_delivery import FileDelivery
from delivery.email_delivery import EmailDelivery
from delivery.telegram_delivery import TelegramDelivery
from delivery.base import AlertChannel

logger = logging.getLogger(__name__)


def build_channels(config: Config) -> List[AlertChannel]:
    channels: List[AlertChannel] = []

    if config.ALERT_OUTPUT_DIR:
        channels.append(FileDelivery(config.ALERT_OUTPUT_DIR))

    if config.EMAIL_ENABLED:
        channels.append(
            EmailDelivery(
                smtp_host=config.EMAIL_SMTP_HOST,
                smtp_port=config.EMAIL_SMTP_PORT,
                username=config.EMAIL_USERNAME,
                password=config.EMAIL_PASSWORD,
                sender=config.EMAIL_FROM,
                recipient=config.EMAIL_TO,
            )
        )

    if config.TELEGRAM_ENABLED:
        channels.append(
            TelegramDelivery(
                bot_token=config.TELEGRAM_BOT_TOKEN,
                chat_id=config.TELEGRAM_CHAT_ID,
            )
        )

    return channels


def build_llm(config: Config) -> OllamaClient:
    return OllamaClient(
        base_url=config.OLLAMA_BASE_URL,
        model=config.OLLAMA_MODEL,
        embed_model=config.OLLAMA_EMBED_MODEL,
        timeout=config.OLLAMA_TIMEOUT,
    )


def emit(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def run_once(config: Config, db: Database, stage: Optional[str] = None) -> int:
    # fresh collaborators per invocation, nothing carries over between ticks
    orchestrator = build_orchestrator(config, db, build_llm(config), channels=build_channels(config))
    if stage:
        invocation = await orchestrator.run_stage(stage)
    else:
        invocation = await orchestrator.run_tick()
    emit(invocation.as_dict())
    return 0 if invocation.status == "ok" else 1


async def run_loop(config: Config, db: Database) -> int:
    logger.info(f"Starting loop, one stage every {config.scheduler.slot_minutes} minute(s)")
    while True:
        await run_once(config, db)
        delay = max(0.0, next_tick(time.time(), config.scheduler.slot_minutes) - time.time())
        logger.info(f"Next tick in {delay:.0f}s")
        await asyncio.sleep(delay)


async def run_alerts(args: argparse.Namespace, db: Database) -> int:
    store = AlertStore(db)
    if args.mark_read is not None:
        ok = await store.mark_read(args.mark_read)
        emit({"marked_read": args.mark_read if ok else None})
        return 0 if ok else 1
    if args.mark_all:
        emit({"marked_read": await store.mark_all_read()})
        return 0
    if args.stats:
        emit(await store.stats())
        return 0

    alerts = await store.list_alerts(
        alert_type=args.type,
        unread_only=args.unread,
        limit=args.limit,
        offset=args.offset,
    )
    emit([asdict(alert) for alert in alerts])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pain-radar", description="Staged pain-point pipeline")
    parser.add_argument("--config", help="Path to config.yml")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("tick", help="Run the stage owning the current time slot (default)")

    stage = sub.add_parser("stage", help="Run one stage now")
    stage.add_argument("name", choices=DEFAULT_STAGE_ORDER)

    sub.add_parser("loop", help="Run one stage per time slot until interrupted")
    sub.add_parser("init-db", help="Create the database tables")
    sub.add_parser("status", help="Show queue depths, last runs and whether Ollama is reachable")

    runs = sub.add_parser("runs", help="Show the most recent stage runs")
    runs.add_argument("--stage", choices=DEFAULT_STAGE_ORDER)
    runs.add_argument("--limit", type=int, default=20)

    alerts = sub.add_parser("alerts", help="List or acknowledge alerts")
    alerts.add_argument("--type", choices=["new_cluster", "trend_spike", "competitor_gap", "high_severity"])
    alerts.add_argument("--unread", action="store_true")
    alerts.add_argument("--limit", type=int, default=20)
    alerts.add_argument("--offset", type=int, default=0)
    alerts.add_argument("--mark-read", type=int, metavar="ID")
    alerts.add_argument("--mark-all", action="store_true")
    alerts.add_argument("--stats", action="store_true")

    trends = sub.add_parser("trends", help="Show the latest topic trends, or one topic's history")
    trends.add_argument("--status", choices=TREND_STATUSES)
    trends.add_argument("--topic", help="Daily history for this topic instead")
    trends.add_argument("--days", type=int, default=30)
    trends.add_argument("--limit", type=int, default=20)

    rescore = sub.add_parser("rescore", help="Force a cluster to be scored again")
    rescore.add_argument("cluster_id", type=int)

    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    setup_logging(config.LOG_LEVEL)

    db = Database(config.DATABASE_PATH)
    command = args.command or "tick"

    if command == "init-db":
        await db.init_tables()
        emit({"initialized": config.DATABASE_PATH})
        return 0
    if command == "tick":
        return await run_once(config, db)
    if command == "stage":
        return await run_once(config, db, stage=args.name)
    if command == "loop":
        return await run_loop(config, db)
    if command == "status":
        status = await pipeline_status(db, config)
        status["oracle_reachable"] = await build_llm(config).health_check()
        emit(status)
        return 0
    if command == "runs":
        emit(await db.get_stage_runs(stage=args.stage, limit=args.limit))
        return 0
    if command == "alerts":
        return await run_alerts(args, db)
    if command == "trends":
        if args.topic:
            emit(await topic_history(db, args.topic, days=args.days))
        else:
            emit(await latest_trends(db, status=args.status, limit=args.limit))
        return 0
    if command == "rescore":
        ok = await request_rescore(db, args.cluster_id)
        emit({"cluster_id": args.cluster_id, "rescore_requested": ok})
        return 0 if ok else 1

    raise ValueError(f"Unknown command: {command}")


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    cli()
