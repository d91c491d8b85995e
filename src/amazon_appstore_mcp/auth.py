"""Login with Amazon token exchange."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from amazon_appstore_mcp.config import ClientSettings
from amazon_appstore_mcp.errors import AuthenticationError, ConfigurationError
from amazon_appstore_mcp.models import Token

logger = structlog.get_logger(__name__)

# Scope required for the App Submission API
SCOPE = "appstore::apps:readwrite"


def load_security_profile(security_profile: str | dict[str, Any]) -> tuple[str, str]:
    """Extract the client ID and secret from an LWA security profile.

    Args:
        security_profile: Path to the profile JSON file, the JSON itself, or a
                          dictionary. Keys may sit at top level or under ``web``.

    Returns:
        Tuple of (client_id, client_secret).

    Raises:
        ConfigurationError: If the profile cannot be read or lacks credentials.
    """
    profile: Any = security_profile
    if isinstance(security_profile, str):
        try:
            if security_profile.strip().startswith("{"):
                profile = json.loads(security_profile)
            else:
                profile_path = Path(security_profile).expanduser()
                if not profile_path.is_file():
                    raise ConfigurationError(f"Security profile not found: {security_profile}")
                profile = json.loads(profile_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Security profile is not valid JSON: {e}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Security profile could not be read: {e}") from e

    if not isinstance(profile, dict):
        raise ConfigurationError("Security profile must be a JSON object")

    if isinstance(profile.get("web"), dict):
        profile = profile["web"]

    client_id = profile.get("client_id")
    client_secret = profile.get("client_secret")
    if not client_id or not client_secret:
        raise ConfigurationError("Security profile must contain client_id and client_secret")
    return client_id, client_secret


def fetch_token(
    security_profile: str | dict[str, Any],
    settings: ClientSettings | None = None,
    transport: httpx.BaseTransport | None = None,
) -> Token:
    """Exchange a security profile for a bearer token.

    Args:
        security_profile: LWA security profile (see ``load_security_profile``).
        settings: Transport settings; defaults are used when omitted.
        transport: Optional httpx transport, used by tests.

    Returns:
        Access token for the Appstore API.

    Raises:
        ConfigurationError: If the profile is unusable.
        AuthenticationError: If LWA rejects the request or cannot be reached.
    """
    settings = settings or ClientSettings()
    client_id, client_secret = load_security_profile(security_profile)
    log = logger.bind(component="TokenService", client_id=client_id)
    log.info("Authenticating")

    data = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
        "scope": SCOPE,
    }

    try:
        with httpx.Client(timeout=settings.timeout, transport=transport) as http:
            response = http.post(settings.auth_url, data=data)
    except httpx.HTTPError as e:
        log.exception("Token request failed", error=str(e))
        raise AuthenticationError(f"Failed to reach Login with Amazon: {e}") from e

    if not response.is_success:
        log.error("Token request rejected", status=response.status_code)
        raise AuthenticationError(
            f"Login with Amazon rejected the security profile (HTTP {response.status_code})"
        )

    try:
        token = Token.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise AuthenticationError(f"Unexpected token response: {e}") from e

    log.debug("Authenticated", expires_in=token.expires_in)
    return token
