"""Amazon Appstore MCP Server - Main server implementation."""

from __future__ import annotations

import argparse
import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import structlog
from mcp.server.fastmcp import FastMCP

from amazon_appstore_mcp.auth import fetch_token
from amazon_appstore_mcp.cli import configure_logging
from amazon_appstore_mcp.client import AppstoreClient
from amazon_appstore_mcp.config import ClientSettings, PublishConfig
from amazon_appstore_mcp.errors import AppstoreError, AuthenticationError, ConfigurationError
from amazon_appstore_mcp.models import PublishPhase, PublishResult
from amazon_appstore_mcp.publisher import AppstorePublisher

configure_logging()
logger = structlog.get_logger(__name__)


def get_security_profile_from_context() -> str | dict[str, Any]:
    """Get the LWA security profile for the current request.

    Checks the X-Amazon-Security-Profile request header (JSON) first, then
    falls back to the profile configured in the lifespan context.

    Raises:
        ConfigurationError: If the header is malformed or no profile is configured.
    """
    ctx = mcp.get_context()

    if hasattr(ctx, "request_context") and hasattr(ctx.request_context, "request"):
        request = ctx.request_context.request
        if request is not None and hasattr(request, "headers"):
            headers = request.headers
            if "x-amazon-security-profile" in headers:
                try:
                    profile: dict[str, Any] = json.loads(headers["x-amazon-security-profile"])
                    return profile
                except json.JSONDecodeError as e:
                    raise ConfigurationError(
                        f"Invalid JSON in X-Amazon-Security-Profile header: {e}"
                    ) from e

    if hasattr(ctx, "request_context") and hasattr(ctx.request_context, "lifespan_context"):
        configured: str | None = ctx.request_context.lifespan_context.get("security_profile")
        if configured:
            return configured

    raise ConfigurationError(
        "No security profile provided. Set the X-Amazon-Security-Profile header, "
        "or configure the server with AMAZON_APPSTORE_SECURITY_PROFILE."
    )


def _open_client(application_id: str) -> AppstoreClient:
    settings = ClientSettings.from_env()
    token = fetch_token(get_security_profile_from_context(), settings)
    return AppstoreClient(token, application_id, settings)


def _error(e: Exception) -> dict[str, Any]:
    return {"success": False, "error": str(e)}


@asynccontextmanager
async def lifespan(_server: FastMCP):  # type: ignore[no-untyped-def]
    """Lifespan context manager for the MCP server.

    Makes the configured security profile available via server context.
    """
    logger.info("Initializing Amazon Appstore MCP Server")
    security_profile = os.environ.get("AMAZON_APPSTORE_SECURITY_PROFILE")
    if not security_profile:
        logger.warning("No security profile configured; requests must send one in headers")

    yield {"security_profile": security_profile}

    logger.info("Shutting down Amazon Appstore MCP Server")


# Initialize the MCP server
mcp = FastMCP("Amazon Appstore MCP Server", lifespan=lifespan)


# =============================================================================
# Publishing Tools
# =============================================================================


@mcp.tool()
def publish_apks(
    application_id: str,
    apk_paths: list[str],
    replace_edit: bool = False,
    replace_apks: bool = False,
) -> dict[str, Any]:
    """Publish APK files to the Amazon Appstore.

    By default new APKs are uploaded, the device targeting of the APKs already
    on the edit is moved onto them by position, and the old APKs are deleted.

    Args:
        application_id: Amazon application ID (e.g., amzn1.devportal.mobileapp.xxx)
        apk_paths: Absolute paths to APK files, in the same order as the APKs on the edit
        replace_edit: Delete the active edit and publish into a new one
        replace_apks: Replace existing APKs in place instead of uploading new ones

    Returns:
        Publish result with success status and details
    """
    try:
        config = PublishConfig(
            security_profile=get_security_profile_from_context(),
            application_id=application_id,
            apk_paths=[Path(p) for p in apk_paths],
            replace_edit=replace_edit,
            replace_apks=replace_apks,
        )
        result = AppstorePublisher(config, ClientSettings.from_env()).publish()
    except AppstoreError as e:
        logger.exception("Publish failed", application_id=application_id, error=str(e))
        phase = getattr(e, "phase", None)
        if isinstance(e, AuthenticationError):
            phase = PublishPhase.AUTHENTICATE
        result = PublishResult(
            success=False,
            application_id=application_id,
            message=f"Publish failed: {e}",
            phase=phase,
            error=type(e).__name__,
        )

    return result.model_dump(mode="json")


# =============================================================================
# Inspection Tools
# =============================================================================


@mcp.tool()
def get_active_edit(application_id: str) -> dict[str, Any]:
    """Get the edit currently open for an app.

    Args:
        application_id: Amazon application ID

    Returns:
        The active edit, or {"edit": None} if there is none
    """
    try:
        with _open_client(application_id) as client:
            edit = client.get_active_edit()
    except AppstoreError as e:
        return _error(e)

    return {"edit": edit.model_dump() if edit else None}


@mcp.tool()
def list_apks(application_id: str, edit_id: str) -> dict[str, Any]:
    """List the APKs attached to an edit, in server order.

    Args:
        application_id: Amazon application ID
        edit_id: Edit ID

    Returns:
        APKs with version code, ID and name
    """
    try:
        with _open_client(application_id) as client:
            apks = client.list_apks(edit_id)
    except AppstoreError as e:
        return _error(e)

    return {"apks": [apk.model_dump() for apk in apks]}


@mcp.tool()
def get_apk_targeting(application_id: str, edit_id: str, apk_id: str) -> dict[str, Any]:
    """Get the device targeting of an APK.

    Args:
        application_id: Amazon application ID
        edit_id: Edit ID
        apk_id: APK ID

    Returns:
        Amazon and non-Amazon device targeting plus the catch-all setting
    """
    try:
        with _open_client(application_id) as client:
            targeting = client.get_apk_targeting(edit_id, apk_id)
    except AppstoreError as e:
        return _error(e)

    return {"targeting": targeting.to_wire(), "etag": targeting.etag}


# =============================================================================
# Entry Point
# =============================================================================


TRANSPORTS = ("stdio", "sse", "streamable-http")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="amazon-appstore-mcp",
        description="Serve Amazon Appstore publishing tools over MCP.",
    )
    parser.add_argument(
        "--transport",
        choices=TRANSPORTS,
        default=os.environ.get("MCP_TRANSPORT", "stdio"),
        help="MCP transport (default: MCP_TRANSPORT env var or stdio)",
    )
    parser.add_argument(
        "--host",
        default=os.environ.get("MCP_HOST", "127.0.0.1"),
        help="Bind address for sse and streamable-http (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("MCP_PORT", "8000")),
        help="Bind port for sse and streamable-http (default: 8000)",
    )
    parser.add_argument(
        "--security-profile",
        help="LWA security profile used when a request carries none "
        "(default: AMAZON_APPSTORE_SECURITY_PROFILE env var)",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Run the Amazon Appstore MCP Server."""
    args = build_parser().parse_args(argv)
    if args.log_level:
        configure_logging(args.log_level)

    # The lifespan reads the profile from the environment.
    if args.security_profile:
        os.environ["AMAZON_APPSTORE_SECURITY_PROFILE"] = args.security_profile

    if args.transport == "stdio":
        logger.info("Starting Amazon Appstore MCP Server", transport=args.transport)
    else:
        mcp.settings.host = args.host
        mcp.settings.port = args.port
        logger.info(
            "Starting Amazon Appstore MCP Server",
            transport=args.transport,
            address=f"{args.host}:{args.port}",
        )

    mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
