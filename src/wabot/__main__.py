"""
wabot - Entry Point

Loads configuration, sets up logging and runs the supervisor until a
signal arrives.
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path

import yaml

from .config import create_default_config, load_config
from .errors import ConfigInvalid
from .lifecycle.supervisor import EXIT_FAULT, EXIT_OK, Supervisor

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT
)
logger = logging.getLogger(__name__)


def configure_logging(level: str, log_file: str = None, debug: bool = False):
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO))

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    # aiohttp is chatty at DEBUG
    if not debug:
        logging.getLogger("aiohttp").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wabot",
        description="WhatsApp bot with a self-healing connection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with bot.yaml from the current directory (or config/bot.yaml)
  wabot

  # Explicit configuration file
  wabot --config /etc/wabot/bot.yaml

  # Validate configuration and exit
  wabot --check-config

  # Write a starter bot.yaml
  wabot --init
"""
    )

    parser.add_argument(
        '--config', '-c',
        help='Path to bot.yaml (default: search ./bot.yaml, ./config/bot.yaml)'
    )

    parser.add_argument(
        '--check-config',
        action='store_true',
        help='Load and validate configuration, then exit'
    )

    parser.add_argument(
        '--init',
        action='store_true',
        help='Write a default bot.yaml to the current directory and exit'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    return parser


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.init:
        target = Path(args.config or "bot.yaml")
        if target.exists():
            print(f"\n❌ Error: {target} already exists")
            return EXIT_FAULT
        create_default_config(target)
        print(f"Created {target}")
        return EXIT_OK

    try:
        config = load_config(args.config)
    except (FileNotFoundError, KeyError, yaml.YAMLError, ConfigInvalid) as e:
        logger.error(f"Configuration error: {e}")
        print(f"\n❌ Error: {e}")
        return EXIT_FAULT

    configure_logging(config.log_level, config.log_file, args.debug)

    valid, errors = config.validate()
    if not valid:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        print("\n❌ Invalid configuration:")
        for error in errors:
            print(f"  - {error}")
        return EXIT_FAULT

    if args.check_config:
        print("✅ Configuration is valid")
        return EXIT_OK

    if not config.pairing.phone_number:
        logger.warning("PHONE_NUMBER is not set; pairing will abort if the session is not linked")

    return await Supervisor(config).run()


def run():
    """Entry point for console script"""
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    run()
