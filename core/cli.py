"""
Command line entry point.

Usage:
    jobspread dispatch                 # run the dispatcher once (external cron)
    jobspread work [--once]            # consume the dispatch queue
    jobspread schedule                 # in-process daily trigger + dispatch
    jobspread results [--limit 20]     # print stored dispatch results
    jobspread dlq [--limit 10]         # print dead-lettered jobs

    --config PATH overrides JOBSPREAD_CONFIG / config/settings.yaml.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys

from dotenv import load_dotenv

from config.settings import load_settings
from core.app import AppContext
from core.handlers import dispatch_handler
from core.log_config import configure_logging


async def _dispatch(ctx: AppContext, args) -> int:
    result = await dispatch_handler(ctx)
    print(json.dumps(result))
    return 0


async def _work(ctx: AppContext, args) -> int:
    worker = ctx.worker()
    if args.once:
        report = await worker.run_once()
        processed = len(report.items) if report else 0
        retries = len(report.retries) if report else 0
        print(json.dumps({"processed": processed, "retries": retries}))
        return 0
    try:
        await worker.start()
    finally:
        await worker.stop()
    return 0


async def _schedule(ctx: AppContext, args) -> int:
    trigger = ctx.trigger()
    worker = ctx.worker()
    await trigger.start()
    if not args.no_worker:
        await worker.start_background()
    try:
        await trigger.wait()
    finally:
        await worker.stop()
        await trigger.stop()
    return 0


async def _results(ctx: AppContext, args) -> int:
    for result in await ctx.store.scan(limit=args.limit):
        print(result.model_dump_json())
    return 0


async def _dlq(ctx: AppContext, args) -> int:
    for letter in await ctx.queue.dead_letters(args.limit):
        print(json.dumps({
            "messageId": letter.message_id,
            "partition": letter.partition_key,
            "dedupId": letter.dedup_id,
            "receiveCount": letter.receive_count,
            "reason": letter.reason,
        }))
    return 0


COMMANDS = {
    "dispatch": _dispatch,
    "work": _work,
    "schedule": _schedule,
    "results": _results,
    "dlq": _dlq,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jobspread", description="Daily job spreader and dispatch worker")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("dispatch", help="Spread today's records onto the dispatch queue")

    work = sub.add_parser("work", help="Consume the dispatch queue")
    work.add_argument("--once", action="store_true", help="Process a single batch and exit")

    schedule = sub.add_parser("schedule", help="Run the daily trigger in-process")
    schedule.add_argument("--no-worker", action="store_true", help="Do not consume in the same process")

    results = sub.add_parser("results", help="Print stored dispatch results")
    results.add_argument("--limit", type=int, default=20)

    dlq = sub.add_parser("dlq", help="Print dead-lettered jobs")
    dlq.add_argument("--limit", type=int, default=10)
    return parser


async def run(args) -> int:
    settings = load_settings(args.config)
    configure_logging(settings.debug)
    ctx = await AppContext.create(settings)
    try:
        return await COMMANDS[args.command](ctx, args)
    finally:
        await ctx.close()


def main(argv: list[str] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
