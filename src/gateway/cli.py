import argparse
import logging
import os
from typing import Sequence

import uvicorn
import yaml

from .config import DEFAULT_CONFIG_PATH, load_config
from .server import create_app

logger = logging.getLogger(__name__)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="OpenAI-compatible multi-endpoint chat gateway")
    parser.add_argument(
        "--config",
        default=os.environ.get("GATEWAY_CONFIG", DEFAULT_CONFIG_PATH),
        help="path to the YAML or TOML configuration file",
    )
    parser.add_argument("--host", default=None, help="override server.host")
    parser.add_argument("--port", type=int, default=None, help="override server.port")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("GATEWAY_LOG_LEVEL", "INFO"),
        help="logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        cfg = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.critical("cannot load configuration %s: %s", args.config, exc)
        return 1
    if not cfg.endpoints:
        logger.warning("configuration %s defines no endpoints", args.config)
    host = args.host or cfg.server.host
    port = args.port if args.port is not None else cfg.server.port
    logger.info("starting gateway on %s:%d with %d endpoints", host, port, len(cfg.endpoints))
    uvicorn.run(create_app(cfg), host=host, port=port, log_level=args.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
