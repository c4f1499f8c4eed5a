"""
Centralized argument parsing for qbt-automate
"""

import os
import argparse
from pathlib import Path

from qbt_automate.__version__ import __version__, __description__
from qbt_automate.logging import get_logger


def smart_config_default() -> str:
    """
    Determine smart default for config directory

    Returns ./config if it exists (bare metal), otherwise /config (Docker)
    """
    local_config = Path('./config')
    if local_config.exists() and local_config.is_dir():
        return './config'
    return '/config'


def create_base_parser(description: str = __description__) -> argparse.ArgumentParser:
    """
    Create base argument parser with common arguments

    Args:
        description: Description for the parser

    Returns:
        ArgumentParser with common arguments added
    """
    parser = argparse.ArgumentParser(
        prog='qbt-automate',
        description=f'qbt-automate - {description}',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--config-dir',
        type=Path,
        default=None,
        help=f'Path to configuration directory (default: {smart_config_default()} or CONFIG_DIR env var)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Record what would change without changing anything'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Set logging verbosity (default: from config or INFO)'
    )

    parser.add_argument(
        '--trace',
        action='store_true',
        help='Enable trace mode with detailed logging (module/function/line)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'qbt-automate v{__version__}'
    )

    parser.add_argument(
        '--validate',
        action='store_true',
        help='Validate configuration and rules files without running'
    )

    parser.add_argument(
        '--list-rules',
        action='store_true',
        help='List all rules in evaluation order and exit'
    )

    return parser


def create_parser() -> argparse.ArgumentParser:
    """Create the qbt-automate argument parser (modes plus server/client overrides)"""
    parser = create_base_parser()

    modes = parser.add_mutually_exclusive_group()
    modes.add_argument(
        '--serve',
        action='store_true',
        help='Run the scheduler and HTTP API server'
    )
    modes.add_argument(
        '--once',
        action='store_true',
        help='Run one cycle with every rule due, then exit'
    )
    modes.add_argument(
        '--preview',
        metavar='RULE_ID',
        help='Show what a delete rule would remove, without acting'
    )

    parser.add_argument(
        '--instance',
        metavar='ID',
        help='Limit --once, --preview or the apply request to one instance'
    )
    parser.add_argument(
        '--limit',
        type=int,
        default=25,
        help='Number of torrents listed by --preview (default: 25)'
    )
    parser.add_argument(
        '--offset',
        type=int,
        default=0,
        help='Offset into the --preview listing (default: 0)'
    )

    server = parser.add_argument_group('server options')
    server.add_argument('--server-host', help='Bind address (default: 0.0.0.0)')
    server.add_argument('--server-port', type=int, help='Port (default: 5000)')
    server.add_argument('--server-api-key', help='API key required by the server')

    client = parser.add_argument_group('client options')
    client.add_argument('--client-server-url', help='Server URL (default: http://localhost:5000)')
    client.add_argument('--client-api-key', help='API key sent to the server')

    parser.epilog = '''
Examples:
  # Run the scheduler and HTTP API
  qbt-automate --serve

  # One cycle for every instance, dry run
  qbt-automate --once --dry-run

  # What would the cleanup rule delete right now?
  qbt-automate --preview cleanup-old-seeds --instance default

  # Ask a running server to apply rules now
  qbt-automate --instance default

  # Validate configuration without running
  qbt-automate --validate
    '''

    return parser


def process_args(args: argparse.Namespace) -> Path:
    """
    Process parsed arguments and set environment variables

    Args:
        args: Parsed arguments from argparse

    Returns:
        Path to configuration directory
    """
    if args.dry_run:
        os.environ['DRY_RUN'] = 'true'

    if args.log_level:
        os.environ['LOG_LEVEL'] = args.log_level

    if args.trace:
        os.environ['TRACE_MODE'] = 'true'

    if args.config_dir:
        config_dir = args.config_dir
    elif 'CONFIG_DIR' in os.environ:
        config_dir = Path(os.environ['CONFIG_DIR'])
    else:
        config_dir = Path(smart_config_default())

    return config_dir


def handle_utility_args(args: argparse.Namespace, config) -> bool:
    """
    Handle utility arguments (--validate, --list-rules)

    Rules are parsed and validated when the configuration loads, so reaching
    this point means they are valid.

    Args:
        args: Parsed arguments
        config: Loaded configuration object

    Returns:
        True if a utility argument was handled (should exit), False otherwise
    """
    logger = get_logger(__name__)

    if args.validate:
        logger.info("Validating configuration and rules...")

        instances = config.get_instances()
        for instance_id, instance in instances.items():
            state = 'enabled' if instance.get('enabled', True) else 'disabled'
            logger.info(f"✓ Instance '{instance_id}': {instance['host']} ({state})")

        rules = config.get_rules()
        if not rules:
            logger.warning("No rules defined in rules.yml")
        else:
            logger.info(f"✓ Loaded {len(rules)} rules")
            for rule in rules:
                logger.info(f"  ✓ '{rule.name}' ({', '.join(rule.action_kinds) or 'no actions'})")

        logger.info("Validation complete! Configuration is valid.")
        return True

    if args.list_rules:
        rules = config.get_rules()

        if not rules:
            logger.info("No rules defined in rules.yml")
            return True

        ordered = sorted(rules, key=lambda r: (r.instance, r.sort_order, r.id))
        logger.info(f"Rules ({len(rules)} total, evaluated per instance in sort order):")
        logger.info(f"{'Instance':<12} {'Order':<6} {'Enabled':<8} {'Interval':<9} {'Id':<28} {'Actions'}")
        logger.info("-" * 90)

        for rule in ordered:
            enabled = '✓' if rule.enabled else '✗'
            logger.info(
                f"{rule.instance:<12} {rule.sort_order:<6} {enabled:<8} {rule.interval:<9} "
                f"{rule.id:<28} {', '.join(rule.action_kinds)}"
            )

        return True

    return False
