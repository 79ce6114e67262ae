"""CLI entry point for streamkeeper.

streamkeeper-server: runs the playback loop and the Flask control API
"""

import argparse
import dataclasses
import logging
import os
import signal
import sys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="streamkeeper - keeps a live stream playing through network failures"
    )
    parser.add_argument(
        "--host", default=None, help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port", type=int, default=None, help="Port to listen on (default: 5050)"
    )
    parser.add_argument(
        "--config", default=None, help="Path to streamkeeper.toml config file"
    )
    parser.add_argument(
        "--url", default=None, help="Stream URL (default: /live on stream_origin)"
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)"
    )
    parser.add_argument(
        "--no-player", action="store_true",
        help="Run the API without starting playback (for testing without mpv)"
    )
    parser.add_argument(
        "--quiet", action="store_true",
        help="Suppress per-request werkzeug logs"
    )
    parser.add_argument(
        "--telegram", action="store_true",
        help="Enable Telegram bot (requires [telegram] config or STREAMKEEPER_TELEGRAM_TOKEN env)"
    )
    return parser


def run_server(argv: list[str] | None = None):
    """Entry point for streamkeeper-server command."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    log = logging.getLogger("streamkeeper")

    from streamkeeper.config import load_config
    from streamkeeper.server.app import create_app
    from streamkeeper.server.service import PlaybackService

    config = load_config(args.config)

    # CLI args override config file
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.url:
        config.session = dataclasses.replace(config.session, url=args.url)

    service = PlaybackService(config)
    if args.no_player:
        log.info("Playback disabled (--no-player)")
    else:
        service.start()

    app = create_app(config, service=service)

    if args.quiet:
        logging.getLogger("werkzeug").setLevel(logging.WARNING)

    bot = None
    if args.telegram or config.telegram.enabled:
        token = config.telegram.bot_token or os.environ.get("STREAMKEEPER_TELEGRAM_TOKEN", "")
        if not token:
            log.error(
                "Telegram bot enabled but no token configured. "
                "Set [telegram] bot_token in streamkeeper.toml or STREAMKEEPER_TELEGRAM_TOKEN env var."
            )
        else:
            try:
                from streamkeeper.server.telegram_bot import StreamKeeperBot
                bot = StreamKeeperBot(
                    token=token,
                    api_url=f"http://127.0.0.1:{config.server.port}",
                    allowed_users=config.telegram.allowed_users,
                )
                bot.start_background()
                log.info("Telegram bot enabled")
            except ImportError:
                log.error(
                    "Telegram dependencies not installed. "
                    'Install with: pip install "streamkeeper[telegram]"'
                )

    def _shutdown(signum, frame):
        log.info("Received signal %d, shutting down", signum)
        if bot:
            bot.stop_background()
        service.stop()
        sys.exit(0)

    signal.signal(signal.SIGTERM, _shutdown)

    log.info(
        "streamkeeper starting on %s:%d (stream %s)",
        config.server.host, config.server.port,
        config.session.resolve_url(config.server.stream_origin),
    )
    try:
        app.run(
            host=config.server.host,
            port=config.server.port,
            threaded=True,
        )
    finally:
        if bot:
            bot.stop_background()
        service.stop()


if __name__ == "__main__":
    run_server()
