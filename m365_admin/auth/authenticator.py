"""
Token acquisition for Microsoft Graph through MSAL.

Three sign-in modes are supported:

    certificate  app-only, base64-encoded PFX on disk
    secret       app-only, client secret
    delegated    interactive device-code flow for a signed-in admin

App-only modes request the `.default` scope, so the token carries whatever
application permissions were consented on the app registration.
"""

from __future__ import annotations

import base64
import getpass
import logging
import os
from pathlib import Path
from typing import Any, Optional

import msal
from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)

from ..config import AuthConfig

logger = logging.getLogger("m365_admin.auth")

GRAPH_DEFAULT_SCOPE = ["https://graph.microsoft.com/.default"]
LOGIN_AUTHORITY = "https://login.microsoftonline.com/"


class AuthenticationError(Exception):
    """Sign-in failed, or a command ran before anyone signed in."""


def load_pfx_credential(cert_path: str, password: str) -> dict[str, str]:
    """
    Turn a base64 PFX file into the credential dict MSAL expects:
    {"thumbprint": <SHA1 hex>, "private_key": <PKCS8 PEM>}.
    """
    path = Path(cert_path)
    if not path.is_file():
        raise AuthenticationError(f"Certificate file not found: {cert_path}")

    try:
        pfx = base64.b64decode(path.read_text(encoding="ascii").strip())
        key, cert, _ = pkcs12.load_key_and_certificates(
            pfx, password.encode("utf-8") if password else None
        )
    except ValueError as e:
        raise AuthenticationError(f"Could not open {path.name}: {e}") from e
    if key is None or cert is None:
        raise AuthenticationError(f"{path.name} does not contain a key and certificate.")

    thumbprint = cert.fingerprint(SHA1()).hex()
    logger.info(f"Loaded certificate {thumbprint}")
    pem = key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
    return {"thumbprint": thumbprint, "private_key": pem.decode("utf-8")}


class Authenticator:
    """Acquires and holds the Graph access token for one toolkit run."""

    def __init__(self, config: AuthConfig):
        self.config = config
        self.access_token: Optional[str] = None

    def acquire_token(self) -> str:
        flows = {
            "certificate": self._app_only,
            "secret": self._app_only,
            "delegated": self._device_code,
        }
        flow = flows.get(self.config.mode)
        if flow is None:
            raise AuthenticationError(f"Unknown auth mode: {self.config.mode}")
        settings = getattr(self.config, self.config.mode)
        if settings is None:
            raise AuthenticationError(f"No '{self.config.mode}' settings configured.")
        return flow(settings)

    def require_context(self) -> str:
        """The token from the last successful sign-in."""
        if not self.access_token:
            raise AuthenticationError(
                "Not signed in. Acquire a token before running commands."
            )
        return self.access_token

    # ── Flows ───────────────────────────────────────────────────────────────

    def _app_only(self, settings) -> str:
        logger.info(f"Signing in to tenant {settings.tenant_id} as app {settings.client_id} ({self.config.mode})")
        app = msal.ConfidentialClientApplication(
            client_id=settings.client_id,
            authority=LOGIN_AUTHORITY + settings.tenant_id,
            client_credential=self._client_credential(settings),
        )
        return self._store(app.acquire_token_for_client(scopes=GRAPH_DEFAULT_SCOPE), self.config.mode)

    def _client_credential(self, settings) -> Any:
        if self.config.mode == "secret":
            secret = settings.client_secret or os.environ.get("M365_CLIENT_SECRET", "")
            if not secret:
                raise AuthenticationError(
                    "No client secret. Set it in the config file or M365_CLIENT_SECRET."
                )
            return secret

        password = (settings.certificate_password
                    or os.environ.get("M365_CERT_PASSWORD", "")
                    or getpass.getpass("Certificate password: "))
        return load_pfx_credential(settings.certificate_path, password)

    def _device_code(self, settings) -> str:
        app = msal.PublicClientApplication(
            client_id=settings.client_id,
            authority=LOGIN_AUTHORITY + settings.tenant_id,
        )
        flow = app.initiate_device_flow(scopes=settings.scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Could not start device sign-in: {flow.get('error_description', 'unknown error')}"
            )
        # The message MSAL returns already names the URL and the code
        print(f"\n  🔑 {flow.get('message') or flow['verification_uri'] + '  code: ' + flow['user_code']}\n")
        return self._store(app.acquire_token_by_device_flow(flow), "delegated")

    def _store(self, result: dict, mode: str) -> str:
        token = result.get("access_token")
        if not token:
            reason = result.get("error_description") or result.get("error") or "no token returned"
            raise AuthenticationError(f"{mode} sign-in failed: {reason}")
        self.access_token = token
        logger.info(f"Signed in ({mode}).")
        return token
