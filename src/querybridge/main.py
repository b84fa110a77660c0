"""
querybridge entry point.

This file handles startup concerns (arg-parsing, logging) and launches the capability host or one of
the client modes.
"""

import argparse
import logging
import sys

from querybridge.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    # Keep HTTP client chatter out of the way
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the querybridge application.

    ``server`` runs the capability host in front of the database; ``ask`` sends one message through
    the orchestration loop; ``shell`` keeps an interactive conversation going.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run the querybridge capability host or client")
    parser.add_argument(
        "--mode",
        choices=["server", "ask", "shell"],
        type=str.lower,
        default="server",
        help="Serve the database over MCP, ask one question, or open a shell (default: server)",
    )
    parser.add_argument(
        "message",
        nargs="?",
        default=None,
        help="Message to send in ask mode",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level

    _init_logging(settings.LOG_LEVEL)

    logger.info("Starting querybridge [%s mode]", args.mode)
    logger.debug(
        "Settings: %s",
        settings.model_dump(exclude={"DB_PASSWORD", "OPENAI_API_KEY", "ANTHROPIC_API_KEY"}),
    )

    if args.mode == "server":
        # Lazy import to avoid server dependencies if not needed
        from querybridge.api.app import run_api  # pylint: disable=import-outside-toplevel

        run_api(settings)
    else:
        # Lazy import to avoid client dependencies if not needed
        from querybridge.client.cli import run_cli  # pylint: disable=import-outside-toplevel

        sys.exit(run_cli(args.mode, args.message, settings))


if __name__ == "__main__":
    main()
