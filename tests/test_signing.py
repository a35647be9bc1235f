"""Tests for the SigV4 signing client."""

from datetime import datetime, timezone

import pytest

from klbupload.upload.exceptions import SigningError, TransportError
from klbupload.upload.signing import SigningClient, amz_date, sha256_hex

from fakes import error, json_response, success


@pytest.fixture
def signer(fake_transport):
    return SigningClient(fake_transport, "clabu-1", "Cloud/Aws/Bucket/Upload/")


@pytest.mark.asyncio
async def test_sign_success(fake_transport, signer):
    """Test a signing round trip and its request envelope."""
    fake_transport.on("POST", r":signV4$", success({"authorization": "AWS4-HMAC-SHA256 Credential=abc"}))

    authorization = await signer.sign(
        "PUT",
        "s3.amazonaws.com",
        "/bucket/key?partNumber=1&uploadId=u",
        {"x-amz-date": "20240101T000000Z"},
        "e3b0",
    )

    assert authorization == "AWS4-HMAC-SHA256 Credential=abc"
    request = fake_transport.requests[0]
    assert request.url == "Cloud/Aws/Bucket/Upload/clabu-1:signV4"
    assert request.json_body == {
        "method": "PUT",
        "host": "s3.amazonaws.com",
        "uri": "/bucket/key?partNumber=1&uploadId=u",
        "headers": {"x-amz-date": "20240101T000000Z"},
        "hash": "e3b0",
    }


@pytest.mark.asyncio
async def test_sign_access_denied(fake_transport, signer):
    """Test that a 403 is a signing error carrying the server token."""
    fake_transport.on("POST", r":signV4$", error("Access denied", "error_access_denied", status_code=403))

    with pytest.raises(SigningError) as exc_info:
        await signer.sign("PUT", "h", "/b/k", {}, "00")

    assert exc_info.value.status_code == 403
    assert exc_info.value.token == "error_access_denied"


@pytest.mark.asyncio
async def test_sign_expired_session(fake_transport, signer):
    """Test an error envelope delivered with HTTP 200."""
    fake_transport.on(
        "POST", r":signV4$", json_response({"result": "error", "error": "Upload expired", "token": "error_expired"})
    )

    with pytest.raises(SigningError) as exc_info:
        await signer.sign("PUT", "h", "/b/k", {}, "00")

    assert exc_info.value.token == "error_expired"


@pytest.mark.asyncio
async def test_sign_missing_authorization(fake_transport, signer):
    """Test a success envelope without an authorization value."""
    fake_transport.on("POST", r":signV4$", success({}))

    with pytest.raises(SigningError):
        await signer.sign("PUT", "h", "/b/k", {}, "00")


@pytest.mark.asyncio
async def test_sign_transport_failure(fake_transport, signer):
    """Test that transport failures surface as signing errors."""
    fake_transport.on("POST", r":signV4$", TransportError("connection reset"))

    with pytest.raises(SigningError):
        await signer.sign("PUT", "h", "/b/k", {}, "00")


def test_helpers():
    """Test body hashing and the amz date format."""
    assert sha256_hex(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert amz_date(datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)) == "20240506T070809Z"
