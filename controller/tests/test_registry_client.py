"""Tests for promoting candidate manifests over the registry v2 API."""

import hashlib

import httpx
import pytest

from controller.src.errors import PushError, RegistryAuthError, RegistryUnavailableError
from controller.src.models.artifact import ServiceImage
from controller.src.services.registry import RegistryClient, parse_challenge

MANIFEST = b'{"schemaVersion":2,"mediaType":"application/vnd.oci.image.manifest.v1+json"}'
DIGEST = "sha256:" + hashlib.sha256(MANIFEST).hexdigest()
MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"

def image(digest=DIGEST):
    return ServiceImage(
        name="web",
        context="services/web",
        repository="registry.local:5000/releasex/web",
        tag="candidate-0123456789ab",
        stable_tag="latest",
        digest=digest,
    )

class FakeRegistryServer:
    def __init__(self, auth=None, get_status=200, put_status=201, token_reply=None):
        self.auth = auth
        self.token_reply = token_reply
        self.get_status = get_status
        self.put_status = put_status
        self.requests = []
        self.stored = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == "/token":
            if self.token_reply is not None:
                return httpx.Response(200, content=self.token_reply)
            return httpx.Response(200, json={"token": "t0ken"})

        if self.auth == "bearer" and request.headers.get("Authorization") != "Bearer t0ken":
            return httpx.Response(401, headers={
                "WWW-Authenticate": 'Bearer realm="https://registry.local:5000/token",service="registry",scope="repository:releasex/web:pull,push"'
            })
        if self.auth == "basic" and not request.headers.get("Authorization", "").startswith("Basic "):
            return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="registry"'})

        if request.method == "GET":
            if self.get_status != 200:
                return httpx.Response(self.get_status)
            return httpx.Response(200, content=MANIFEST, headers={
                "Content-Type": MEDIA_TYPE,
                "Docker-Content-Digest": DIGEST,
            })

        self.stored[request.url.path] = (request.content, request.headers.get("Content-Type"))
        return httpx.Response(self.put_status)

def client_for(server, **kwargs):
    return RegistryClient("https://registry.local:5000", transport=httpx.MockTransport(server), **kwargs)

def test_parse_challenge():
    scheme, params = parse_challenge('Bearer realm="https://auth.example/token",service="registry"')
    assert scheme == "bearer"
    assert params == {"realm": "https://auth.example/token", "service": "registry"}

def test_repository_path_strips_host():
    client = RegistryClient("https://registry.local:5000")
    assert client.repository_path("registry.local:5000/releasex/web") == "releasex/web"
    assert client.repository_path("releasex/web") == "releasex/web"

@pytest.mark.asyncio
async def test_promote_copies_manifest():
    server = FakeRegistryServer()
    tag = await client_for(server).promote(image(), "latest")

    assert tag.reference == "registry.local:5000/releasex/web:latest"
    assert tag.digest == DIGEST
    get, put = server.requests
    assert get.url.path == "/v2/releasex/web/manifests/candidate-0123456789ab"
    assert "application/vnd.oci.image.manifest.v1+json" in get.headers["Accept"]
    assert server.stored["/v2/releasex/web/manifests/latest"] == (MANIFEST, MEDIA_TYPE)

@pytest.mark.asyncio
async def test_digest_mismatch_refused():
    server = FakeRegistryServer()
    with pytest.raises(PushError, match="expected scanned digest"):
        await client_for(server).promote(image(digest="sha256:" + "0" * 64), "latest")
    assert all(r.method == "GET" for r in server.requests)

@pytest.mark.asyncio
async def test_missing_candidate():
    with pytest.raises(PushError, match="not found"):
        await client_for(FakeRegistryServer(get_status=404)).promote(image(), "latest")

@pytest.mark.asyncio
async def test_server_error_is_transient():
    with pytest.raises(RegistryUnavailableError):
        await client_for(FakeRegistryServer(get_status=503)).promote(image(), "latest")

@pytest.mark.asyncio
async def test_connection_error_is_transient():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RegistryUnavailableError, match="unreachable"):
        await client_for(refuse).promote(image(), "latest")

@pytest.mark.asyncio
async def test_bearer_token_flow():
    server = FakeRegistryServer(auth="bearer")
    client = client_for(server, username="ci", password="secret")
    await client.promote(image(), "latest")

    token_request = next(r for r in server.requests if r.url.path == "/token")
    assert token_request.url.params["scope"] == "repository:releasex/web:pull,push"
    assert token_request.headers["Authorization"].startswith("Basic ")
    # GET challenged once, token reused for the PUT
    assert [r.url.path for r in server.requests].count("/token") == 1

@pytest.mark.asyncio
async def test_basic_auth_flow():
    server = FakeRegistryServer(auth="basic")
    await client_for(server, username="ci", password="secret").promote(image(), "latest")
    assert "/v2/releasex/web/manifests/latest" in server.stored

@pytest.mark.asyncio
async def test_basic_auth_without_credentials_is_auth_error():
    with pytest.raises(RegistryAuthError, match="requires credentials"):
        await client_for(FakeRegistryServer(auth="basic")).promote(image(), "latest")

@pytest.mark.asyncio
async def test_forbidden_push_is_auth_error():
    with pytest.raises(RegistryAuthError):
        await client_for(FakeRegistryServer(put_status=403)).promote(image(), "latest")

@pytest.mark.asyncio
async def test_html_token_reply_is_transient():
    server = FakeRegistryServer(auth="bearer", token_reply=b"<html><body>502 Bad Gateway</body></html>")
    with pytest.raises(RegistryUnavailableError, match="non-JSON"):
        await client_for(server, username="ci", password="secret").promote(image(), "latest")
