#!/usr/bin/env python3
"""
grab-area CLI Interface
=======================
Command-line front end for the area download queue.

Features:
- Queue areas by search term (with sub-areas)
- Seed the queue from a JSON-lines file (retries)
- Live progress monitoring
- Archive/failed log summary
"""

import argparse
import json
import signal
import sys
import time
from pathlib import Path
from typing import List, Dict, Optional

from grabarea_core import (
    DEFAULT_DRAIN_DELAY,
    DEFAULT_OUTPUT_DIR,
    GrabAreaError,
    QueueEntry,
    QueueManager,
)
from grabarea_records import OutcomeRecorder, RunLog, RUN_OUTPUT_LOG_NAME
from grabarea_remote import AreaClient, DEFAULT_BASE_URL, CONNECTION_TIMEOUT


def _load_credentials(auth_path: str) -> Optional[Dict[str, str]]:
    """
    Load session headers from an auth file.
    Expects lines like:
        session_cookie=s=abc123
        user_agent=MyClient/1.0
    Returns a header dict or None.
    """
    if not auth_path:
        return None
    p = Path(auth_path)
    if not p.exists():
        print(f"⚠  Auth file not found: {auth_path}")
        return None
    try:
        creds = {}
        for line in p.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' in line:
                key, _, val = line.partition('=')
                creds[key.strip().lower()] = val.strip()
    except OSError as e:
        print(f"⚠  Failed to read auth file: {e}")
        return None

    headers = {}
    if creds.get('session_cookie'):
        headers['Cookie'] = creds['session_cookie']
    if creds.get('user_agent'):
        headers['User-Agent'] = creds['user_agent']
    if not headers:
        print("⚠  Auth file found but has no session_cookie or user_agent")
        return None
    print("✓ Credentials loaded from auth file")
    return headers


def _load_seed_entries(path: str) -> List[QueueEntry]:
    """Load queue entries from a JSON-lines file (one entry object per line)."""
    p = Path(path)
    if not p.exists():
        print(f"❌ Error: File not found: {path}")
        sys.exit(1)

    entries = []
    for number, line in enumerate(p.read_text(encoding='utf-8').splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(QueueEntry.from_dict(json.loads(line)))
        except (ValueError, AttributeError) as e:
            print(f"⚠  Skipping line {number}: {e}")
    return entries


class GrabAreaCLI:
    """Command-line interface for grab-area."""

    def __init__(self):
        self.manager = None
        self.client = None
        self.running = False
        self.last_stats = {}

        # Handle Ctrl+C gracefully
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        print("\n🛑 Shutdown signal received, finishing current area...")
        self.running = False
        self._shutdown()
        sys.exit(0)

    def _shutdown(self):
        if self.manager:
            self.manager.stop()
        if self.client:
            self.client.close()

    def _print_header(self):
        print("=" * 70)
        print("🔥 grab-area - Area Archiver")
        print("=" * 70)
        print()

    def _print_stats(self, stats: dict):
        if self.last_stats:
            print("\033[F" * 4, end="")  # Move cursor up 4 lines

        print(f"\033[K📦 Queue: {stats['queue_depth']} pending, {stats['in_flight']} in flight")
        print(f"\033[K✅ Archived: {stats['archived_this_run']} this run ({stats['archived_count']} total)")
        print(f"\033[K❌ Failed: {stats['failed_this_run']} this run")
        print(f"\033[K📥 Enqueued: {stats['enqueued_total']}")

        self.last_stats = stats

    def _build(self, args):
        output = Path(args.output)
        output.mkdir(parents=True, exist_ok=True)
        run_log = RunLog(output / RUN_OUTPUT_LOG_NAME)
        headers = _load_credentials(getattr(args, 'auth', None))

        print("⚙️  Initializing engine...")
        print(f"   Output directory: {output}")
        print(f"   Service: {args.base_url}")
        print(f"   Download delay: {args.delay}s")
        print("   Auth: ✓ Credentials loaded" if headers else "   Auth: None (public access)")

        self.client = AreaClient(output, base_url=args.base_url, headers=headers,
                                 timeout=args.timeout, log=run_log.write)
        recorder = OutcomeRecorder(output, log=run_log.write, run_log=run_log)
        self.manager = QueueManager(self.client, recorder, output_dir=str(output),
                                    drain_delay=args.delay, run_log=run_log)

    def _monitor_progress(self, verbose: bool = False):
        """Print progress until the queue drains."""
        print("\n📡 Monitoring progress (Ctrl+C to stop)...\n")
        last_log_index = 0

        while self.running:
            stats = self.manager.get_stats()
            self._print_stats(stats)

            if verbose:
                logs, last_log_index = self.manager.get_logs(last_log_index)
                for log in logs:
                    print(f"\033[K{log}")

            if stats['queue_depth'] == 0 and stats['in_flight'] == 0:
                break
            time.sleep(0.5)

        print("\n" + "=" * 70)
        print("✅ QUEUE DRAINED")
        print("=" * 70)
        final_stats = self.manager.get_stats()
        print(f"Areas enqueued: {final_stats['enqueued_total']}")
        print(f"Areas archived: {final_stats['archived_this_run']}")
        print(f"Areas failed: {final_stats['failed_this_run']}")
        print("=" * 70)

    def search(self, args):
        """Queue every term and archive the results."""
        self._print_header()
        self._build(args)

        self.manager.start_drain_loop(args.delay)
        self.running = True

        for term in args.terms:
            print(f"🔍 Searching: {term}")
            try:
                self.manager.submit_search(term)
            except GrabAreaError as e:
                print(f"❌ Search '{term}' failed: {e}")

        self._monitor_progress(verbose=args.verbose)
        self._shutdown()

    def seed(self, args):
        """Archive entries from a seed file verbatim."""
        self._print_header()

        print(f"📂 Loading entries from: {args.items}")
        entries = _load_seed_entries(args.items)
        print(f"✓ Loaded {len(entries)} entries")
        if not entries:
            return

        self._build(args)
        self.manager.start_drain_loop(args.delay)
        self.manager.submit_explicit(entries)
        self.running = True

        self._monitor_progress(verbose=args.verbose)
        self._shutdown()

    def status(self, args):
        """Summarise the archive and failed logs of an output directory."""
        self._print_header()

        output = Path(args.output)
        if not output.exists():
            print("❌ No archive found in this directory")
            sys.exit(1)

        recorder = OutcomeRecorder(output)
        failures = recorder.read_failures()

        print(f"📊 Archive Status: {output}")
        print("=" * 70)
        print(f"✅ Archived areas: {recorder.archived_count()}")
        print(f"❌ Failed (current log): {len(failures)}")
        for failure in failures[-args.last:]:
            print(f"   {failure['name']} ({failure['id'] or 'no id'}): {failure['reason']}")
        print("=" * 70)


def _add_run_arguments(parser):
    parser.add_argument('--output', default=DEFAULT_OUTPUT_DIR, help='Output directory')
    parser.add_argument('--base-url', default=DEFAULT_BASE_URL, help='Area service base URL')
    parser.add_argument('--delay', type=float, default=DEFAULT_DRAIN_DELAY,
                        help=f'Seconds between downloads (default: {DEFAULT_DRAIN_DELAY})')
    parser.add_argument('--timeout', type=float, default=CONNECTION_TIMEOUT,
                        help=f'Per-request timeout in seconds (default: {CONNECTION_TIMEOUT})')
    parser.add_argument('--auth', help='Path to auth file with session_cookie / user_agent')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show detailed logs')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="grab-area - Area Archiver CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Archive every area matching two terms
  python grabarea_cli.py search castle forest --output ./archive

  # Retry entries from a JSON-lines seed file
  python grabarea_cli.py seed --items retry.jsonl --output ./archive

  # Summarise an archive
  python grabarea_cli.py status --output ./archive
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # SEARCH command
    search_parser = subparsers.add_parser('search', help='Queue areas matching search terms')
    search_parser.add_argument('terms', nargs='+', help='Search terms')
    _add_run_arguments(search_parser)

    # SEED command
    seed_parser = subparsers.add_parser('seed', help='Queue entries from a JSON-lines file')
    seed_parser.add_argument('--items', required=True, help='Path to JSON-lines entries')
    _add_run_arguments(seed_parser)

    # STATUS command
    status_parser = subparsers.add_parser('status', help='Show archive status')
    status_parser.add_argument('--output', default=DEFAULT_OUTPUT_DIR, help='Output directory')
    status_parser.add_argument('--last', type=int, default=10, help='Failures to list (default: 10)')

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    cli = GrabAreaCLI()

    if args.command == 'search':
        cli.search(args)
    elif args.command == 'seed':
        cli.seed(args)
    elif args.command == 'status':
        cli.status(args)


if __name__ == "__main__":
    main()
