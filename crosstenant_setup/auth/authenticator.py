"""
Authentication module — certificate-based app-only and delegated device-code auth.
Uses MSAL against the Microsoft Identity Platform; tokens are reused until
shortly before they expire.
"""

from __future__ import annotations

import base64
import getpass
import logging
import os
import time
from typing import Optional

from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.primitives.hashes import SHA1
import msal

from ..config import AuthConfig, CertificateAuth

logger = logging.getLogger("crosstenant_setup.auth")

APP_SCOPES = ["https://graph.microsoft.com/.default"]
CERT_PASSWORD_ENV = "CROSSTENANT_CERT_PASSWORD"
EXPIRY_MARGIN_SECONDS = 300


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


def load_certificate_credential(cert_config: CertificateAuth) -> dict:
    """
    Read a base64-encoded PFX and return an MSAL client credential
    (thumbprint + PEM private key).
    """
    password = cert_config.certificate_password or os.environ.get(CERT_PASSWORD_ENV, "")
    if not password:
        password = getpass.getpass("Enter the certificate password: ")

    try:
        with open(cert_config.certificate_path, "r") as f:
            cert_bytes = base64.b64decode(f.read().strip())
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            cert_bytes, password.encode("utf-8") if password else None
        )
    except FileNotFoundError:
        raise AuthenticationError(f"Certificate file not found: {cert_config.certificate_path}")
    except ValueError as e:
        raise AuthenticationError(f"Failed to load certificate: {e}")

    if private_key is None or certificate is None:
        raise AuthenticationError("Certificate file does not contain a key pair")

    thumbprint = certificate.fingerprint(SHA1()).hex()
    logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")
    return {
        "thumbprint": thumbprint,
        "private_key": private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        ).decode("utf-8"),
    }


class Authenticator:
    """
    Handles MSAL-based authentication for Microsoft Graph.
    Supports:
      - Certificate-based app-only authentication
      - Delegated authentication (device code flow)
    """

    def __init__(self, config: AuthConfig):
        self.config = config
        self._access_token: Optional[str] = None
        self._token_expiry: float = 0.0

    async def acquire_token(self) -> str:
        """Return a valid access token, acquiring a new one when needed."""
        if self._access_token and time.time() < self._token_expiry - EXPIRY_MARGIN_SECONDS:
            return self._access_token

        if self.config.mode == "certificate":
            result = self._acquire_certificate_token()
        elif self.config.mode == "delegated":
            result = self._acquire_delegated_token()
        else:
            raise AuthenticationError(f"Unknown auth mode: {self.config.mode}")

        if "access_token" not in result:
            error = result.get("error_description", result.get("error", "Unknown"))
            raise AuthenticationError(f"{self.config.mode.capitalize()} auth failed: {error}")

        self._access_token = result["access_token"]
        self._token_expiry = time.time() + float(result.get("expires_in", 3600))
        logger.info(f"{self.config.mode.capitalize()} authentication successful.")
        return self._access_token

    def _acquire_certificate_token(self) -> dict:
        cert_config = self.config.certificate
        if not cert_config:
            raise AuthenticationError("Certificate auth config not provided.")

        logger.info("Authenticating with certificate-based app credentials...")
        app = msal.ConfidentialClientApplication(
            client_id=cert_config.client_id,
            authority=f"https://login.microsoftonline.com/{cert_config.tenant_id}",
            client_credential=load_certificate_credential(cert_config),
        )
        return app.acquire_token_for_client(scopes=APP_SCOPES)

    def _acquire_delegated_token(self) -> dict:
        deleg_config = self.config.delegated
        if not deleg_config:
            raise AuthenticationError("Delegated auth config not provided.")

        logger.info("Initiating device code authentication flow...")
        app = msal.PublicClientApplication(
            client_id=deleg_config.client_id,
            authority=f"https://login.microsoftonline.com/{deleg_config.tenant_id}",
        )
        flow = app.initiate_device_flow(scopes=deleg_config.scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )

        print(f"\n{'='*60}")
        print(f"  To sign in, open: {flow['verification_uri']}")
        print(f"  Enter code: {flow['user_code']}")
        print(f"{'='*60}\n")
        return app.acquire_token_by_device_flow(flow)
