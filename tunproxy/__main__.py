"""
Command line entry point.

    python -m tunproxy [--env-file PATH] [--host HOST] [--port PORT] [--log-level LEVEL]
    python -m tunproxy --write-env-template config.temp.env

Startup misconfiguration (invalid settings, TLS enabled without readable
certificate/key) exits with status 1; nothing after startup is fatal.
"""

import argparse
import logging
import os
import sys

import uvicorn
from pydantic import ValidationError

from . import __version__
from .config import ENV_FILE_VARIABLE, Settings, validate_configuration, write_env_template
from .main import create_app, setup_logging

logger = logging.getLogger("tunproxy")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tunproxy",
        description="Authenticated forwarding proxy for browser clients",
    )
    parser.add_argument("--env-file", help="Configuration file (default: .env)")
    parser.add_argument("--host", help="Override LISTEN_HOST")
    parser.add_argument("--port", type=int, help="Override LISTEN_PORT")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    parser.add_argument(
        "--write-env-template",
        metavar="PATH",
        help="Write a configuration template with a fresh token and exit",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    if args.write_env_template:
        setup_logging("INFO")
        try:
            path = write_env_template(args.write_env_template)
        except FileExistsError as e:
            logger.error(str(e))
            return 1
        print(f"Configuration template written to {path}; edit it and start with --env-file {path}")
        return 0

    env_file = args.env_file or os.environ.get(ENV_FILE_VARIABLE, ".env")

    overrides = {
        "LISTEN_HOST": args.host,
        "LISTEN_PORT": args.port,
        "LOG_LEVEL": args.log_level,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}

    try:
        settings = Settings(_env_file=env_file, **overrides)
    except ValidationError as e:
        print(f"Configuration error:\n{e}", file=sys.stderr)
        return 1

    setup_logging(settings.LOG_LEVEL)

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(warning)
    if not status["valid"]:
        for error in status["errors"]:
            logger.error(error)
        return 1

    if settings.token_was_generated:
        # Shown once so the operator can hand it to clients
        print(f"Generated bearer token for this run: {settings.TUNPROXY_TOKEN}", file=sys.stderr)

    logger.info("Listening", extra={"address": settings.listen_address})

    uvicorn.run(
        create_app(settings),
        host=settings.LISTEN_HOST,
        port=settings.LISTEN_PORT,
        ssl_certfile=settings.TLS_CERT_FILE if settings.TLS_ENABLED else None,
        ssl_keyfile=settings.TLS_KEY_FILE if settings.TLS_ENABLED else None,
        log_level=settings.LOG_LEVEL.lower(),
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
