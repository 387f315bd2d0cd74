"""
Command-line interface for the daily digest notifier.

Provides commands for:
- Running the notifier daemon
- Scheduling/stopping/removing a recipient's daily digest
- Sending a test digest
- Viewing jobs, delivery history and configuration

Commands other than 'run' change the durable job store; a running daemon
picks the changes up on its next sync (every sync_interval_seconds).
"""

import argparse
import json
import logging
import re
import signal
import sys
import threading
from pathlib import Path

from notifier.config import NotifierConfig
from notifier.jobs import DeliveryHistory
from notifier.service import NotificationService
from notifier.timerules import parse_time_of_day

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


def setup_logging(log_file: str = None, verbose: bool = False, level: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

    # APScheduler is chatty at INFO
    logging.getLogger('apscheduler').setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_config(args) -> NotifierConfig:
    try:
        return NotifierConfig.load(args.config)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)


def _valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email.strip()))


def _require_email(email: str):
    if not _valid_email(email):
        logger.error(f"Invalid e-mail address: {email}")
        sys.exit(1)


def _service_for(config: NotifierConfig) -> NotificationService:
    """
    Build a service whose registry mirrors the durable store.

    The registry is not started: this process only edits schedules.
    """
    service = NotificationService.from_config(config)
    result = service.reconcile_on_startup()
    if not result:
        logger.error(f"Job store unavailable: {result.message}")
        sys.exit(1)
    return service


def _finish(result):
    if result:
        logger.info(result.message)
    else:
        logger.error(f"{result.message} ({result.outcome.value})")
        sys.exit(1)


def cmd_run(args):
    """Run the notifier in the foreground until SIGINT/SIGTERM."""
    config = _load_config(args)
    setup_logging(
        log_file=args.log_file or config.logging.file,
        verbose=args.verbose,
        level=config.logging.level
    )

    errors = config.validate()
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        sys.exit(1)

    service = NotificationService.from_config(config)
    stop_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    result = service.startup()
    if not result:
        logger.warning(f"Started without durable jobs: {result.message}")
    logger.info(f"Notifier running in {config.timezone}; syncing every {config.sync_interval_seconds}s")

    try:
        while not stop_event.wait(config.sync_interval_seconds):
            service.reconcile_on_startup()
    finally:
        service.shutdown()


def cmd_schedule(args):
    """Schedule and start a recipient's daily digest."""
    setup_logging(verbose=args.verbose)
    _require_email(args.email)

    time_of_day = parse_time_of_day(args.time)
    if time_of_day is None:
        logger.error(f"Invalid time '{args.time}'. Use HH:MM (e.g. 08:30)")
        sys.exit(1)

    service = _service_for(_load_config(args))
    _finish(service.activate(args.email, time_of_day.hour, time_of_day.minute))


def cmd_stop(args):
    """Stop a recipient's daily digest."""
    setup_logging(verbose=args.verbose)
    service = _service_for(_load_config(args))
    _finish(service.stop(args.email))


def cmd_remove(args):
    """Remove a recipient's daily digest."""
    setup_logging(verbose=args.verbose)
    service = _service_for(_load_config(args))
    _finish(service.remove(args.email))


def cmd_stop_all(args):
    """Stop every daily digest."""
    setup_logging(verbose=args.verbose)
    service = _service_for(_load_config(args))
    _finish(service.stop_all())


def cmd_test(args):
    """Send a test digest immediately."""
    setup_logging(verbose=args.verbose)
    _require_email(args.email)
    service = NotificationService.from_config(_load_config(args))
    _finish(service.send_test(args.email))


def cmd_list(args):
    """List stored notification jobs."""
    setup_logging(verbose=args.verbose)
    service = _service_for(_load_config(args))
    jobs = service.job_store.list_all_jobs()

    if args.json:
        print(json.dumps([job.to_dict() for job in jobs], indent=2))
        return

    if not jobs:
        print("No notifications configured")
        return

    print(f"\n{len(jobs)} notification job(s):\n")
    for job in jobs:
        status = "✓" if job.is_active else "✗"
        info = service.job_info(job.job_id)
        print(f"  {status} {job.recipient}")
        print(f"    Time:     {job.time} ({service.timezone})")
        print(f"    Job ID:   {job.job_id}")
        if info and info['next_run']:
            print(f"    Next Run: {info['next_run']}")
        print()


def cmd_info(args):
    """Show one job."""
    setup_logging(verbose=args.verbose)
    service = _service_for(_load_config(args))
    info = service.job_info(args.email)
    if info is None:
        logger.error(f"No notification found for {args.email}")
        sys.exit(1)
    print(json.dumps(info, indent=2))


def cmd_history(args):
    """Show delivery history."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)
    history = DeliveryHistory(Path(config.history.file).expanduser(), config.history.max_entries)
    recipient = args.recipient.strip().lower() if args.recipient else None

    if args.clear:
        history.clear_history(recipient)
        print(f"✓ Cleared delivery history{' for ' + recipient if recipient else ''}")
        return

    records = history.get_history(
        recipient=recipient,
        status=args.status,
        limit=None if args.show_all else args.limit
    )

    if args.json:
        print(json.dumps(records, indent=2, default=str))
        return

    if not records:
        print("No deliveries recorded")
        return

    print(f"\n{'Run':<10}{'Recipient':<32}{'Kind':<11}{'Status':<9}{'Pending':<9}Started")
    print("─" * 100)
    for record in records:
        started = (record.get('start_time') or '')[:19]
        pending = record.get('pending_count')
        print(
            f"{record.get('run_id', ''):<10}"
            f"{record.get('recipient', '')[:30]:<32}"
            f"{record.get('kind', ''):<11}"
            f"{record.get('status', ''):<9}"
            f"{'' if pending is None else pending:<9}"
            f"{started}"
        )
        if args.verbose and record.get('error'):
            print(f"          error: {record['error']}")
    print()


def cmd_config(args):
    """Show, validate or initialise configuration."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)

    if args.init:
        config.save()
        print(f"✓ Configuration written to {config.config_path}")
    elif args.validate:
        errors = config.validate()
        if errors:
            for error in errors:
                print(f"✗ {error}")
            sys.exit(1)
        print("✓ Configuration is valid")
    else:
        print(f"Configuration ({config.config_path}):")
        print(json.dumps(config.to_dict(), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='task-notifier',
        description='Daily task digest notifier'
    )
    parser.add_argument(
        '--config',
        type=str,
        help='Path to configuration file (default: $NOTIFIER_CONFIG_PATH or ~/.task_notifier/notifier_config.json)'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser('run', help='Run the notifier in the foreground')
    run_parser.add_argument('--log-file', type=str, help='Log file path (default: from config)')
    run_parser.set_defaults(func=cmd_run)

    schedule_parser = subparsers.add_parser('schedule', help="Schedule a recipient's daily digest")
    schedule_parser.add_argument('email', help='Recipient e-mail address')
    schedule_parser.add_argument('time', help='Time of day (HH:MM, 24-hour)')
    schedule_parser.set_defaults(func=cmd_schedule)

    stop_parser = subparsers.add_parser('stop', help="Stop a recipient's daily digest")
    stop_parser.add_argument('email', help='Recipient e-mail address or job id')
    stop_parser.set_defaults(func=cmd_stop)

    remove_parser = subparsers.add_parser('remove', help="Remove a recipient's daily digest")
    remove_parser.add_argument('email', help='Recipient e-mail address or job id')
    remove_parser.set_defaults(func=cmd_remove)

    stop_all_parser = subparsers.add_parser('stop-all', help='Stop every daily digest')
    stop_all_parser.set_defaults(func=cmd_stop_all)

    test_parser = subparsers.add_parser('test', help='Send a test digest now')
    test_parser.add_argument('email', help='Recipient e-mail address')
    test_parser.set_defaults(func=cmd_test)

    list_parser = subparsers.add_parser('list', help='List notification jobs')
    list_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    list_parser.set_defaults(func=cmd_list)

    info_parser = subparsers.add_parser('info', help='Show one notification job')
    info_parser.add_argument('email', help='Recipient e-mail address or job id')
    info_parser.set_defaults(func=cmd_info)

    history_parser = subparsers.add_parser('history', help='View delivery history')
    history_parser.add_argument('--recipient', '-r', type=str, help='Filter by recipient')
    history_parser.add_argument('--status', '-s', type=str,
                                choices=['success', 'failed', 'running'],
                                help='Filter by status')
    history_parser.add_argument('--limit', '-n', type=int, default=20,
                                help='Maximum number of entries to show (default: 20)')
    history_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                                help='Show all history entries')
    history_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    history_parser.add_argument('--clear', action='store_true',
                                help='Delete recorded deliveries (limited to --recipient when given)')
    history_parser.set_defaults(func=cmd_history)

    config_parser = subparsers.add_parser('config', help='Show or manage configuration')
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument('--show', action='store_true', help='Show configuration (default)')
    config_group.add_argument('--validate', action='store_true', help='Validate configuration')
    config_group.add_argument('--init', action='store_true', help='Write the current configuration to disk')
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
