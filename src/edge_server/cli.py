#!/usr/bin/env python3
"""CLI entry point for the edge server.

Usage:
    edge-server https://example.com:443 --cert-path /etc/letsencrypt,live,example.com
    edge-server http://localhost:8080 --asset-root ./site
    edge-server https://example.com:443 --config args.yaml --renew-immediately

The hosting URL picks the protocol; https always means port 443 with a port 80
redirect and periodic certbot renewal.
"""

import argparse
import logging
import sys
from pathlib import Path

from edge_server.config import ConfigurationError, DEFAULT_ARGS_FILE, DEFAULT_HOSTING, load_config
from edge_server.assets import make_asset_handler
from edge_server.errors import EdgeServerError
from edge_server.hosting import create_hosting

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="edge-server",
        description="Serve assets over HTTPS and keep the certificate renewed",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "hosting",
        nargs="?",
        default=DEFAULT_HOSTING,
        help="Where to listen, as <protocol>://<host>:<port>",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help=f"YAML (or JSON) args file; flags override its values [default: {DEFAULT_ARGS_FILE} if present]",
    )

    # TLS / renewal options
    parser.add_argument(
        "--cert-path",
        help="Certificate directory, comma-separated segments allowed",
    )
    parser.add_argument(
        "--renewal-interval",
        help="Time between renewals (e.g. 12h, 30m, 90s) [default: 12h]",
    )
    parser.add_argument(
        "--renew-immediately",
        action="store_true",
        default=None,
        help="Run the first renewal after 0.5s instead of a full interval",
    )
    parser.add_argument(
        "--renewal-command",
        help="Renewal command line [default: certbot renew]",
    )
    parser.add_argument(
        "--renewal-timeout",
        help="Kill the renewal command after this long [default: 600s]",
    )
    parser.add_argument(
        "--resume-after-failure",
        action="store_true",
        default=None,
        help="Keep scheduling renewals after a failed renewal command",
    )

    parser.add_argument(
        "--asset-root",
        type=Path,
        help="Directory holding asset/assets.json [default: current directory]",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def main(argv=None):
    """CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code: 0 after a clean shutdown, 1 on startup failure
    """
    args = build_parser().parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    args_file = args.config
    if args_file is None:
        if DEFAULT_ARGS_FILE.is_file():
            args_file = DEFAULT_ARGS_FILE
        else:
            logger.info("No arguments defined in %s", DEFAULT_ARGS_FILE)

    try:
        config = load_config(
            args.hosting,
            args_file=args_file,
            overrides={
                "cert_path": args.cert_path,
                "renewal_interval": args.renewal_interval,
                "renew_immediately": args.renew_immediately,
                "renewal_command": args.renewal_command,
                "renewal_timeout": args.renewal_timeout,
                "resume_after_failure": args.resume_after_failure,
                "asset_root": args.asset_root,
            },
        )
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    logger.info("Params: %s", config)

    hosting = create_hosting(config, make_asset_handler(config.asset_root))
    try:
        hosting.start()
    except EdgeServerError as e:
        logger.error("Failed to start server: %s", e)
        return 1

    hosting.serve_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
