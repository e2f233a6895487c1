from unittest.mock import MagicMock, patch

import pytest

from crosstenant_setup.auth.authenticator import AuthenticationError, Authenticator, load_certificate_credential
from crosstenant_setup.config import AuthConfig, CertificateAuth, DelegatedAuth


def _delegated() -> AuthConfig:
    return AuthConfig(mode="delegated", delegated=DelegatedAuth(tenant_id="t", client_id="c"))


@pytest.mark.asyncio
@patch("crosstenant_setup.auth.authenticator.msal.PublicClientApplication")
async def test_delegated_token_is_reused(mock_app_cls: MagicMock, capsys):
    app = mock_app_cls.return_value
    app.initiate_device_flow.return_value = {"user_code": "ABC", "verification_uri": "https://microsoft.com/devicelogin"}
    app.acquire_token_by_device_flow.return_value = {"access_token": "tok", "expires_in": 3600}
    auth = Authenticator(_delegated())

    assert await auth.acquire_token() == "tok"
    assert await auth.acquire_token() == "tok"

    assert app.acquire_token_by_device_flow.call_count == 1
    assert "ABC" in capsys.readouterr().out


@pytest.mark.asyncio
@patch("crosstenant_setup.auth.authenticator.msal.PublicClientApplication")
async def test_failed_token_raises(mock_app_cls: MagicMock, capsys):
    app = mock_app_cls.return_value
    app.initiate_device_flow.return_value = {"user_code": "ABC", "verification_uri": "https://x"}
    app.acquire_token_by_device_flow.return_value = {"error": "authorization_declined"}

    with pytest.raises(AuthenticationError, match="authorization_declined"):
        await Authenticator(_delegated()).acquire_token()


@pytest.mark.asyncio
async def test_missing_certificate_config():
    with pytest.raises(AuthenticationError, match="not provided"):
        await Authenticator(AuthConfig(mode="certificate")).acquire_token()


def test_certificate_file_missing(tmp_path):
    cert = CertificateAuth("t", "c", str(tmp_path / "missing.txt"), certificate_password="pw")
    with pytest.raises(AuthenticationError, match="not found"):
        load_certificate_credential(cert)
