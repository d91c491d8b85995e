"""Command line entry point for publishing APKs to the Amazon Appstore."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

import structlog

from amazon_appstore_mcp.config import ClientSettings, PublishConfig
from amazon_appstore_mcp.errors import AppstoreError
from amazon_appstore_mcp.publisher import AppstorePublisher

logger = structlog.get_logger(__name__)


def configure_logging(level: str | None = None) -> None:
    """Configure structured logging to stderr (stdout is reserved for MCP JSON-RPC)."""
    log_level = level or os.environ.get("AMAZON_APPSTORE_LOG_LEVEL", "INFO")
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="amazon-appstore-publish",
        description="Upload APKs to the Amazon Appstore.",
    )
    parser.add_argument("apks", nargs="*", type=Path, help="APK files to publish, in order")
    parser.add_argument(
        "--security-profile",
        help="Path to LWA security profile JSON or JSON content "
        "(default: AMAZON_APPSTORE_SECURITY_PROFILE env var)",
    )
    parser.add_argument(
        "--application-id",
        help="Amazon application ID (default: AMAZON_APPSTORE_APPLICATION_ID env var)",
    )
    parser.add_argument(
        "--replace-edit",
        action="store_true",
        help="Delete the active edit and publish into a new one",
    )
    parser.add_argument(
        "--replace-apks",
        action="store_true",
        help="Replace existing APKs in place instead of uploading new ones and deleting the old",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Publish APKs and return the process exit status."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    config = PublishConfig.from_env(
        security_profile=args.security_profile,
        application_id=args.application_id,
        apk_paths=args.apks,
        replace_edit=args.replace_edit,
        replace_apks=args.replace_apks,
    )

    try:
        result = AppstorePublisher(config, ClientSettings.from_env()).publish()
    except AppstoreError as e:
        logger.error("Publish failed", error=str(e), phase=getattr(e, "phase", None))
        print(f"❌ {e}", file=sys.stderr)
        return 1

    print(f"🎉 {result.message}")
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
