#!/usr/bin/env python3
"""
qbt-automate CLI

Modes:
1. Server mode (--serve): scheduler plus HTTP API
2. One-shot (--once): one forced cycle per instance, then exit
3. Preview (--preview RULE_ID): what a delete rule would remove
4. Client mode (default): ask a running server to apply rules now
"""

import sys
import json
import requests

from qbt_automate.activity import ActivityRecorder, create_activity_store
from qbt_automate.arguments import create_parser, handle_utility_args, process_args
from qbt_automate.config import load_config, resolve_config, parse_int, ENV_VAR_MAP
from qbt_automate.errors import handle_errors
from qbt_automate.logging import setup_logging, get_logger
from qbt_automate.programs import ProgramRunner
from qbt_automate.scheduler import RuleScheduler
from qbt_automate.utils import format_bytes

logger = None  # Set after logging is configured


def get_server_config(args, config_obj) -> dict:
    """
    Get server configuration from CLI args, env vars, or config file

    Returns:
        Dictionary with server configuration
    """
    return {
        'host': resolve_config(
            getattr(args, 'server_host', None),
            ENV_VAR_MAP['server.host'],
            config_obj.config,
            'server.host',
            default='0.0.0.0'
        ),
        'port': parse_int(resolve_config(
            getattr(args, 'server_port', None),
            ENV_VAR_MAP['server.port'],
            config_obj.config,
            'server.port',
            default=5000
        ), 5000),
        'api_key': resolve_config(
            getattr(args, 'server_api_key', None),
            ENV_VAR_MAP['server.api_key'],
            config_obj.config,
            'server.api_key',
            default=None
        ),
    }


def get_client_config(args, config_obj) -> dict:
    """
    Get client configuration from CLI args, env vars, or config file

    Returns:
        Dictionary with client configuration
    """
    return {
        'server_url': resolve_config(
            getattr(args, 'client_server_url', None),
            ENV_VAR_MAP['client.server_url'],
            config_obj.config,
            'client.server_url',
            default='http://localhost:5000'
        ),
        'api_key': resolve_config(
            getattr(args, 'client_api_key', None),
            ENV_VAR_MAP['client.api_key'],
            config_obj.config,
            'client.api_key',
            default=None
        )
    }


def build_scheduler(config_obj) -> RuleScheduler:
    """Scheduler wired to the configured activity store and program runner"""
    dry_run = config_obj.is_dry_run()
    recorder = ActivityRecorder(create_activity_store(config_obj))
    return RuleScheduler(
        config_obj,
        recorder=recorder,
        dry_run=dry_run,
        program_runner=ProgramRunner.from_config(config_obj, dry_run=dry_run),
    )


def run_server_mode(args, config_obj):
    """
    Run server mode - scheduler plus HTTP API server

    Args:
        args: Parsed CLI arguments
        config_obj: Loaded configuration object
    """
    logger.info("=" * 60)
    logger.info("Starting qbt-automate server")
    logger.info("=" * 60)

    server_config = get_server_config(args, config_obj)

    if not server_config['api_key']:
        logger.error("Server API key is required. Set via:")
        logger.error("  - CLI: --server-api-key <key>")
        logger.error("  - Env: QBT_AUTOMATE_SERVER_API_KEY or QBT_AUTOMATE_SERVER_API_KEY_FILE")
        logger.error("  - Config: server.api_key in config.yml")
        sys.exit(1)

    scheduler = build_scheduler(config_obj)
    if scheduler.dry_run:
        logger.info("Dry-run mode: no changes will be sent to qBittorrent")

    # The scheduler thread starts in the forked worker (see run_server)
    from qbt_automate.server import create_app, run_server
    app = create_app(
        scheduler_instance=scheduler,
        recorder_instance=scheduler.recorder,
        api_key=server_config['api_key']
    )

    logger.info(f"Starting server on {server_config['host']}:{server_config['port']}")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 60)

    try:
        run_server(
            app=app,
            host=server_config['host'],
            port=server_config['port'],
            log_http_access=config_obj.get('logging.http_access', False)
        )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        scheduler.stop()
        scheduler.recorder.store.close()
        logger.info("Server stopped")


def run_once_mode(args, config_obj) -> bool:
    """
    Run one forced cycle per instance in the foreground

    Returns:
        True if every cycle completed
    """
    scheduler = build_scheduler(config_obj)
    scheduler.prune()

    results = scheduler.run_all(force=True, instance_id=args.instance)
    if scheduler.program_runner is not None:
        scheduler.program_runner.wait(timeout=300)

    ok = True
    for instance_id, stats in results.items():
        status = scheduler.get_status()['instances'][instance_id]
        if status['last_error']:
            ok = False
            logger.error(f"[{instance_id}] Cycle failed: {status['last_error']}")
        elif stats is None:
            logger.info(f"[{instance_id}] No enabled rules")
        else:
            result = stats.to_dict()
            logger.info(
                f"[{instance_id}] {result['total_torrents']} torrents, {result['rules_matched']} matches, "
                f"{result['actions_executed']} executed, {result['actions_skipped']} unchanged, "
                f"{result['actions_failed']} failed, {result['actions_dry_run']} dry-run"
            )

    scheduler.recorder.store.close()
    return ok


def run_preview_mode(args, config_obj):
    """Print what a delete rule would remove"""
    scheduler = RuleScheduler(config_obj, dry_run=True)

    instance_id = args.instance
    if not instance_id:
        matches = [r.instance for r in config_obj.get_rules() if r.id == args.preview]
        if len(matches) > 1:
            logger.error(f"Rule '{args.preview}' exists in several instances; pass --instance")
            sys.exit(1)
        instance_id = matches[0] if matches else 'default'

    try:
        preview = scheduler.preview_delete(instance_id, args.preview, limit=args.limit, offset=args.offset)
    except KeyError as e:
        logger.error(str(e.args[0]))
        sys.exit(1)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"Delete preview for '{preview.rule_name}' ({preview.mode}) on instance '{instance_id}'")
    if preview.free_space:
        fs = preview.free_space
        if 'error' in fs:
            logger.warning(f"  Free space: {fs['error']}")
        else:
            logger.info(
                f"  Free space {format_bytes(fs['current'])} -> {format_bytes(fs['projected'])} "
                f"(threshold {format_bytes(fs['threshold'])}); "
                f"{fs['accepted_total']} of {fs['eligible_total']} eligible torrent(s) needed"
            )
    logger.info(f"  {preview.total} torrent(s) would be deleted")
    for example in preview.examples:
        logger.info(f"    {example['hash'][:8]}  {format_bytes(example['size']):>10}  {example['name']}")

    if args.log_level == 'DEBUG':
        logger.debug(json.dumps(preview.to_dict(), indent=2))


def run_client_mode(args, config_obj):
    """
    Run client mode - ask the server to apply rules now

    Args:
        args: Parsed CLI arguments
        config_obj: Loaded configuration object
    """
    client_config = get_client_config(args, config_obj)

    if not client_config['api_key']:
        logger.error("Client API key is required. Set via:")
        logger.error("  - CLI: --client-api-key <key>")
        logger.error("  - Env: QBT_AUTOMATE_CLIENT_API_KEY or QBT_AUTOMATE_CLIENT_API_KEY_FILE")
        logger.error("  - Config: client.api_key in config.yml")
        sys.exit(1)

    server_url = client_config['server_url'].rstrip('/')
    instances = [args.instance] if args.instance else sorted(config_obj.get_instances())

    for instance_id in instances:
        logger.info(f"Requesting apply for instance '{instance_id}' at {server_url}")
        try:
            response = requests.post(
                f"{server_url}/api/instances/{instance_id}/apply",
                headers={'X-API-Key': client_config['api_key']},
                timeout=10
            )
        except requests.exceptions.ConnectionError:
            logger.error(f"Cannot connect to server at {server_url}")
            logger.error("Is the server running? Start with: qbt-automate --serve")
            sys.exit(1)
        except requests.exceptions.Timeout:
            logger.error(f"Connection to {server_url} timed out")
            sys.exit(1)

        if response.status_code == 202:
            logger.info(f"✓ Apply queued for '{instance_id}'")
        elif response.status_code == 401:
            logger.error("Authentication failed - check API key")
            sys.exit(1)
        elif response.status_code == 404:
            logger.error(f"Server does not know instance '{instance_id}'")
            sys.exit(1)
        else:
            logger.error(f"Server error: {response.status_code}")
            logger.error(f"Response: {response.text}")
            sys.exit(1)


@handle_errors
def main():
    """Main entry point for qbt-automate CLI"""
    global logger

    parser = create_parser()
    args = parser.parse_args()

    config_dir = process_args(args)
    config = load_config(config_dir)

    setup_logging(config, config.get_trace_mode())
    logger = get_logger(__name__)

    if handle_utility_args(args, config):
        sys.exit(0)

    if args.serve:
        run_server_mode(args, config)
    elif args.once:
        if not run_once_mode(args, config):
            sys.exit(1)
    elif args.preview:
        run_preview_mode(args, config)
    else:
        run_client_mode(args, config)

    sys.exit(0)


if __name__ == '__main__':
    main()
