#!/usr/bin/env python3
"""
memhealthctl - Memory Health Daemon Control CLI

Commands:
    run             Start the engine and monitor until interrupted
    health          One-shot memory health check of this host
    cleanup         Force a full garbage collection
    config          Show or validate configuration

Usage:
    memhealthctl run --profile production --storage-root /var/lib/memhealth
    memhealthctl run --duration 60 --json-logs
    memhealthctl run --component-level sampler=WARNING --component-level alerts=DEBUG
    memhealthctl health
    memhealthctl health --json
    memhealthctl cleanup
    memhealthctl config show memhealth.yaml
    memhealthctl config validate memhealth.yaml --profile production

Environment:
    MEMHEALTH_CONFIG        Path to configuration file
    MEMHEALTH_STORAGE_ROOT  Storage root directory
    MEMHEALTH_*             Individual setting overrides (see config docs)
"""

import argparse
import json
import os
import signal
import sys
import threading
import time

import yaml

from memhealthd.config import PROFILES, load_config
from memhealthd.constants import Version
from memhealthd.detection import build_sample, evaluate_thresholds
from memhealthd.exceptions import CollectionError, ConfigError
from memhealthd.hub import IntegrationHub, compute_health_score, count_alert_levels, health_label
from memhealthd.logging_config import setup_logging
from memhealthd.models import Alert, HealthStatus
from memhealthd.runtime import PsutilRuntimeControl

MB = 1024 * 1024


class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'

    @classmethod
    def disable(cls):
        for attr in ['RESET', 'BOLD', 'RED', 'GREEN', 'YELLOW', 'CYAN', 'GRAY']:
            setattr(cls, attr, '')

    @classmethod
    def for_status(cls, status: HealthStatus) -> str:
        if status in (HealthStatus.EXCELLENT, HealthStatus.GOOD):
            return cls.GREEN
        if status == HealthStatus.FAIR:
            return cls.YELLOW
        return cls.RED


def _config_path(args):
    return getattr(args, 'config_file', None) or os.environ.get('MEMHEALTH_CONFIG')


def _component_levels(pairs):
    levels = {}
    for pair in pairs or []:
        component, sep, level = pair.partition('=')
        if not sep or not component or not level:
            raise ValueError(f"Expected COMPONENT=LEVEL, got {pair!r}")
        levels[component.strip()] = level.strip()
    return levels


def _load(args):
    config = load_config(_config_path(args), profile=args.profile)
    if getattr(args, 'storage_root', None):
        config.storage.root = args.storage_root
    if getattr(args, 'interval', None):
        config.sampler.sample_interval = args.interval
    return config


def cmd_run(args):
    """Start the engine and print a line per dashboard update."""
    try:
        setup_logging(verbose=args.verbose, log_file=args.log_file, json_format=args.json_logs,
                      component_levels=_component_levels(args.component_level))
    except ValueError as e:
        print(f"{Colors.RED}✗ {e}{Colors.RESET}")
        return 1
    try:
        config = _load(args)
    except ConfigError as e:
        print(f"{Colors.RED}✗ {e}{Colors.RESET}")
        return 1

    hub = IntegrationHub(config=config)
    stop = threading.Event()

    def on_signal(signum, frame):
        print(f"\nReceived signal {signum}")
        stop.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    if not args.quiet:
        def show(summary):
            status = HealthStatus(summary['health_status'])
            memory = summary['memory'] or {}
            print(
                f"{Colors.for_status(status)}{summary['health_status'].upper():<9}{Colors.RESET} "
                f"score={summary['health_score']:.2f} "
                f"system={memory.get('system_utilization', '-')} "
                f"heap={memory.get('heap_utilization', '-')} "
                f"alerts={summary['alerts']['active']} "
                f"recs={summary['optimizations']['total_recommendations']}"
            )
        hub.summaries.subscribe(show)

    print(f"{Colors.BOLD}memhealthd {Version.VERSION}{Colors.RESET} "
          f"storing under {config.storage.root}")
    hub.start()
    try:
        stop.wait(timeout=args.duration)
    finally:
        if args.report:
            result = hub.generate_memory_report()
            print(f"Report written to {result['filepath']}")
        hub.stop()
    return 0


def cmd_health(args):
    """Sample once and score the host without starting the engine."""
    try:
        config = _load(args)
    except ConfigError as e:
        print(f"{Colors.RED}✗ {e}{Colors.RESET}")
        return 1

    runtime = PsutilRuntimeControl(trace_heap=False)
    try:
        counters = runtime.current_counters()
    except CollectionError as e:
        print(f"{Colors.RED}✗ {e}{Colors.RESET}")
        return 1
    finally:
        runtime.close()

    sample = build_sample(counters, time.time(), config.sampler.session_id,
                          config.sampler.fragmentation_threshold)
    crossings = evaluate_thresholds(sample, config.alerts.thresholds)
    critical, warning = count_alert_levels(
        Alert(c.alert_type, c.level, "", c.timestamp) for c in crossings
    )
    score = compute_health_score(sample.system.utilization, sample.fragmentation.score,
                                 critical, warning)
    status = health_label(score)

    if args.json:
        print(json.dumps({
            'health_score': round(score, 4),
            'health_status': status.value,
            'sample': sample.to_dict(),
            'crossings': [c.to_dict() for c in crossings],
        }, indent=2))
    else:
        print(f"{Colors.BOLD}Memory Health:{Colors.RESET} "
              f"{Colors.for_status(status)}{status.value.upper()}{Colors.RESET} ({score:.2f})")
        print(f"  System memory:  {sample.system.utilization * 100:.1f}% "
              f"({sample.system.available / MB:.0f} MB available)")
        print(f"  Process RSS:    {sample.process.rss / MB:.1f} MB")
        if sample.process.heap_total:
            print(f"  Heap:           {sample.process.heap_utilization * 100:.1f}% of RSS")
        else:
            print("  Heap:           not traced")
        print(f"  Fragmentation:  {sample.fragmentation.score:.3f} ({sample.fragmentation.level.value})")
        for crossing in crossings:
            print(f"  {Colors.YELLOW}! {crossing.alert_type.value} {crossing.level.value} "
                  f"({crossing.value * 100:.1f}% >= {crossing.threshold * 100:.0f}%){Colors.RESET}")

    return 0 if status in (HealthStatus.EXCELLENT, HealthStatus.GOOD, HealthStatus.FAIR) else 2


def cmd_cleanup(args):
    """Force a full collection in this process and report the result."""
    runtime = PsutilRuntimeControl()
    try:
        before = runtime.current_counters()
        result = runtime.force_collect()
        after = runtime.current_counters()
    except CollectionError as e:
        print(f"{Colors.RED}✗ {e}{Colors.RESET}")
        return 1
    finally:
        runtime.close()

    print("Garbage collection complete:")
    print(f"  Objects collected: {sum(result['collected_per_generation'])}")
    print(f"  Heap reclaimed:    {result['bytes_reclaimed'] / 1024:.1f} KB")
    print(f"  RSS:               {before.rss / MB:.1f} MB -> {after.rss / MB:.1f} MB")
    print(f"  Duration:          {result['duration_ms']:.1f} ms")
    return 0


def cmd_config(args):
    """Configuration management."""
    if args.config_cmd == 'show':
        try:
            config = load_config(_config_path(args), profile=args.profile)
        except ConfigError as e:
            print(f"{Colors.RED}✗ {e}{Colors.RESET}")
            return 1
        print(yaml.safe_dump(config.to_dict(), sort_keys=False, default_flow_style=False))
        return 0

    elif args.config_cmd == 'validate':
        print("Validating configuration...")
        try:
            load_config(_config_path(args), profile=args.profile)
        except ConfigError as e:
            print(f"{Colors.RED}✗ Configuration has problems{Colors.RESET}")
            print(str(e))
            return 1
        print(f"{Colors.GREEN}✓ Configuration is valid{Colors.RESET}")
        return 0

    print("Usage: memhealthctl config {show,validate} [config_file]")
    return 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='memhealthctl',
        description='Memory Health Daemon Control CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {Version.VERSION}")
    parser.add_argument('--no-color', action='store_true', help='Disable colors')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # run
    run_parser = subparsers.add_parser('run', help='Start monitoring until interrupted')
    run_parser.add_argument('--config', '-c', dest='config_file', help='Config file path (YAML or JSON)')
    run_parser.add_argument('--profile', '-p', choices=sorted(PROFILES), default='default')
    run_parser.add_argument('--storage-root', help='Directory for logs, alerts and reports')
    run_parser.add_argument('--interval', '-i', type=float, help='Sampling interval in seconds')
    run_parser.add_argument('--duration', '-d', type=float, help='Stop after this many seconds')
    run_parser.add_argument('--report', action='store_true', help='Write a memory report on exit')
    run_parser.add_argument('--log-file', help='Also log to this file')
    run_parser.add_argument('--json-logs', action='store_true', help='Log in JSON format')
    run_parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')
    run_parser.add_argument('--quiet', '-q', action='store_true', help='Do not print dashboard updates')
    run_parser.add_argument('--component-level', action='append', metavar='COMPONENT=LEVEL',
                            help='Log level for one component, e.g. alerts=DEBUG (repeatable)')
    run_parser.set_defaults(func=cmd_run)

    # health
    health_parser = subparsers.add_parser('health', help='One-shot memory health check')
    health_parser.add_argument('--config', '-c', dest='config_file', help='Config file path')
    health_parser.add_argument('--profile', '-p', choices=sorted(PROFILES), default='default')
    health_parser.add_argument('--json', action='store_true', help='Print JSON')
    health_parser.set_defaults(func=cmd_health)

    # cleanup
    cleanup_parser = subparsers.add_parser('cleanup', help='Force garbage collection')
    cleanup_parser.set_defaults(func=cmd_cleanup)

    # config
    config_parser = subparsers.add_parser('config', help='Configuration management')
    config_sub = config_parser.add_subparsers(dest='config_cmd')

    show_parser = config_sub.add_parser('show', help='Show the effective configuration')
    show_parser.add_argument('config_file', nargs='?', help='Config file path')
    show_parser.add_argument('--profile', '-p', choices=sorted(PROFILES), default='default')

    validate_parser = config_sub.add_parser('validate', help='Validate configuration')
    validate_parser.add_argument('config_file', nargs='?', help='Config file path')
    validate_parser.add_argument('--profile', '-p', choices=sorted(PROFILES), default='default')

    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    if args.no_color or not sys.stdout.isatty():
        Colors.disable()

    if not args.command:
        parser.print_help()
        return 0

    if hasattr(args, 'func'):
        result = args.func(args)
        return result if result else 0
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
