from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from .config_loader import AppConfig, load_config
from .server import create_app
from ..ai import HuggingFaceImageClassifier, LocalModelPredictor, ModelManager, Predictor

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser with minimal CLI flags.

    Most configuration is loaded from config/screening.json.
    CLI flags are only for quick overrides.
    """
    parser = argparse.ArgumentParser(
        description="Run the eyelid anemia screening server",
        epilog="Configuration is loaded from config/screening.json. "
               "CLI arguments override config file settings."
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/screening.json",
        help="Path to JSON configuration file (default: config/screening.json)"
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Override server host (default: from config file)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override server port (default: from config file)"
    )
    parser.add_argument(
        "--backend",
        choices=("local", "remote"),
        default=None,
        help="Override classifier backend (default: from config file)"
    )
    return parser


def build_predictor(cfg: AppConfig) -> Predictor:
    """Select the classifier backend once, from configuration."""
    if cfg.backend == "remote":
        token = os.environ.get(cfg.remote.token_env)
        if not token:
            logger.warning(
                "Environment variable %s is not set; remote backend will answer with fallback predictions",
                cfg.remote.token_env,
            )
        return HuggingFaceImageClassifier(
            api_token=token,
            api_url=cfg.remote.api_url,
            proxy_url=cfg.remote.proxy_url,
            timeout=cfg.remote.timeout,
        )

    manager = ModelManager(
        cache_path=Path(cfg.model.cache_path),
        fallback_path=Path(cfg.model.fallback_path),
        model_url=cfg.model.url,
        max_attempts=cfg.model.max_attempts,
        retry_delay=cfg.model.retry_delay_seconds,
        download_timeout=cfg.model.download_timeout_seconds,
        serialize_runs=cfg.model.serialize_runs,
    )
    return LocalModelPredictor(manager=manager)


def main() -> None:
    load_dotenv()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s"
        )
    args = build_parser().parse_args()

    try:
        cfg = load_config(args.config if Path(args.config).exists() else None)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load configuration: %s", exc)
        sys.exit(1)

    if args.host:
        cfg.server.host = args.host
    if args.port:
        cfg.server.port = args.port
    if args.backend:
        cfg.backend = args.backend

    logger.info("Server configuration: %s:%d", cfg.server.host, cfg.server.port)
    logger.info("Classifier backend: %s", cfg.backend)

    predictor = build_predictor(cfg)
    status = predictor.initialize()
    if status.is_loaded:
        logger.info("Model ready source=%s", status.model_source)
    else:
        logger.warning(
            "Model not loaded; default predictions will be served until it loads. "
            "Check /api/model-status"
        )

    app = create_app(
        predictor,
        upload_dir=Path(cfg.uploads.directory),
        max_upload_bytes=cfg.uploads.max_bytes,
    )
    try:
        uvicorn.run(app, host=cfg.server.host, port=cfg.server.port, log_level="info")
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received during shutdown")
    finally:
        predictor.close()


if __name__ == "__main__":
    main()
