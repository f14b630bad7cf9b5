#!/usr/bin/env python
"""
Fast Signals - Single Command Startup

Loads history for every configured instrument, connects the market feed
and runs the signal pipeline until interrupted.
"""

import argparse
import asyncio
import dataclasses
import logging
import os
import signal
import sys
from pathlib import Path

from fastsignals.config import ConfigError, Settings, load_settings
from fastsignals.feed import BinanceFuturesFeed
from fastsignals.history import BinanceHistoryClient
from fastsignals.notifier import NotificationError, create_notifier
from fastsignals.pipeline import SignalPipeline
from fastsignals.signal_log import SignalLog


def print_startup_banner(settings: Settings, dry_run: bool):
    """Print startup information"""
    tf = settings.timeframes
    print("\n" + "=" * 70)
    print("  ⚡ Fast Signals")
    print("=" * 70)
    print(f"  Instruments: {', '.join(settings.instruments)}")
    print(f"  Timeframes: fast={tf.fast} primary={tf.primary} confirmation={','.join(tf.confirmation)}")
    print(f"  Notifier: {'log (dry run)' if dry_run else settings.notifier.kind}")
    print(f"  Signal log: {settings.signal_log.path if settings.signal_log.enabled else 'disabled'}")
    print("=" * 70 + "\n")


def position_close_handlers(pipeline: SignalPipeline):
    """
    Map POSIX signals to position-close events.

    ``kill -USR1 <pid>`` reports a winning close and ``kill -USR2 <pid>``
    a losing one, which also arms the post-loss pause. Empty where the
    platform has no user signals.
    """
    if not hasattr(signal, 'SIGUSR1'):
        return {}
    return {
        signal.SIGUSR1: lambda: pipeline.on_position_closed(was_loss=False),
        signal.SIGUSR2: lambda: pipeline.on_position_closed(was_loss=True),
    }


async def run(settings: Settings, dry_run: bool = False):
    """Run pipeline and feed until SIGINT/SIGTERM."""
    notifier = create_notifier(settings, dry_run=dry_run)
    signal_log = SignalLog(settings.signal_log.path) if settings.signal_log.enabled else None
    pipeline = SignalPipeline(settings, BinanceHistoryClient(settings.history), notifier, signal_log)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run
            pass
    close_handlers = position_close_handlers(pipeline)
    for sig, handler in close_handlers.items():
        loop.add_signal_handler(sig, handler)
    if close_handlers and settings.risk.max_concurrent_positions:
        print(f"  Position closes: kill -USR1 {os.getpid()} (win) | kill -USR2 {os.getpid()} (loss)\n")

    await pipeline.start()

    feed = BinanceFuturesFeed(settings, pipeline.submit)
    feed_task = asyncio.create_task(feed.run(), name='feed')

    try:
        await stop_event.wait()
    finally:
        print("\n\n👋 Shutting down gracefully...")
        feed.stop()
        feed_task.cancel()
        try:
            await feed_task
        except asyncio.CancelledError:
            pass
        await pipeline.stop()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='Run the Fast Signals detection pipeline'
    )
    parser.add_argument(
        '--config',
        type=Path,
        help='Path to config.yaml (default: project root)'
    )
    parser.add_argument(
        '--instruments',
        type=str,
        help='Comma-separated subset of configured instruments'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Log alerts instead of sending them'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        choices=['debug', 'info', 'warning', 'error', 'critical'],
        help='Override log level from config'
    )

    args = parser.parse_args()

    # Load configuration
    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"Error loading configuration: {e}")
        sys.exit(1)

    log_level = (args.log_level or settings.logging.level).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.instruments:
        wanted = [s.strip().upper() for s in args.instruments.split(',') if s.strip()]
        unknown = [s for s in wanted if s not in settings.instruments]
        if unknown:
            print(f"Error: instruments not in config: {', '.join(unknown)}")
            sys.exit(1)
        settings = dataclasses.replace(
            settings, instruments={s: settings.instruments[s] for s in wanted}
        )

    print_startup_banner(settings, args.dry_run)

    try:
        asyncio.run(run(settings, dry_run=args.dry_run))
    except KeyboardInterrupt:
        print("\n\n👋 Shutting down gracefully...")
    except NotificationError as e:
        print(f"\n❌ Notifier error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
