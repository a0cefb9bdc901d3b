"""
Registry client - promotes candidate images to their stable tag.

Promotion is a manifest copy inside one repository over the registry HTTP
API v2: GET the candidate manifest, PUT the same bytes under the stable tag.
No layers move, so the published digest is exactly the scanned one.
"""

import base64
import hashlib
import logging
import re
from typing import Dict, Optional, Tuple

import httpx

from controller.src.errors import PushError, RegistryAuthError, RegistryUnavailableError
from controller.src.models.artifact import ImageTag, ServiceImage

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """Split a WWW-Authenticate header into scheme and parameters."""
    scheme, _, params = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(params))

class RegistryClient:
    def __init__(
        self,
        registry_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.registry_url = registry_url.rstrip("/")
        self.username = username
        self.password = password
        self._transport = transport
        self._timeout = timeout
        self._tokens: Dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings) -> "RegistryClient":
        return cls(
            settings.registry_url,
            username=settings.registry_username,
            password=settings.registry_password,
        )

    def repository_path(self, repository: str) -> str:
        """Repository name as the v2 API expects it (no registry host)."""
        host = httpx.URL(self.registry_url).netloc.decode()
        if repository.startswith(host + "/"):
            return repository[len(host) + 1:]
        return repository

    async def promote(self, image: ServiceImage, tag: str) -> ImageTag:
        name = self.repository_path(image.repository)
        scope = f"repository:{name}:pull,push"

        async with httpx.AsyncClient(
            base_url=self.registry_url,
            transport=self._transport,
            timeout=self._timeout,
        ) as client:
            response = await self._request(
                client, "GET", f"/v2/{name}/manifests/{image.tag}", scope,
                headers={"Accept": MANIFEST_MEDIA_TYPES},
            )
            if response.status_code == 404:
                raise PushError(f"Candidate manifest {image.reference} not found in registry")
            self._raise_for_status(response, f"read manifest {image.reference}")

            manifest = response.content
            media_type = response.headers.get("Content-Type", "application/vnd.docker.distribution.manifest.v2+json")
            digest = response.headers.get("Docker-Content-Digest") or "sha256:" + hashlib.sha256(manifest).hexdigest()

            if image.digest and digest != image.digest:
                raise PushError(
                    f"Candidate {image.reference} now points at {digest}, expected scanned digest {image.digest}"
                )

            response = await self._request(
                client, "PUT", f"/v2/{name}/manifests/{tag}", scope,
                content=manifest,
                headers={"Content-Type": media_type},
            )
            self._raise_for_status(response, f"write manifest {image.repository}:{tag}")

        logger.info(f"Promoted {image.reference} to {image.repository}:{tag} ({digest})")
        return ImageTag(service=image.name, repository=image.repository, tag=tag, digest=digest)

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, scope: str, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", {}))
        token = self._tokens.get(scope)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        response = await self._send(client, method, url, headers=headers, **kwargs)
        if response.status_code != 401:
            return response

        # Answer the auth challenge once, then replay
        challenge = response.headers.get("WWW-Authenticate", "")
        scheme, params = parse_challenge(challenge)
        if scheme == "bearer":
            token = await self._fetch_token(client, params, scope)
            self._tokens[scope] = token
            headers["Authorization"] = f"Bearer {token}"
        elif scheme == "basic":
            headers["Authorization"] = self._basic_auth()
        else:
            raise RegistryAuthError(f"Unsupported registry auth challenge: {challenge or 'none'}")

        response = await self._send(client, method, url, headers=headers, **kwargs)
        if response.status_code in (401, 403):
            raise RegistryAuthError(f"Registry rejected credentials for {method} {url}")
        return response

    async def _fetch_token(self, client: httpx.AsyncClient, params: Dict[str, str], scope: str) -> str:
        realm = params.get("realm")
        if not realm:
            raise RegistryAuthError("Bearer challenge without a token realm")

        query = {"scope": params.get("scope", scope)}
        if params.get("service"):
            query["service"] = params["service"]
        auth = (self.username, self.password) if self.username and self.password else None

        try:
            response = await client.get(realm, params=query, auth=auth)
        except httpx.TransportError as e:
            raise RegistryUnavailableError(f"Token service unreachable: {e}")

        if response.status_code in (401, 403):
            if auth is None:
                raise RegistryAuthError("Registry requires credentials (set REGISTRY_USERNAME and REGISTRY_PASSWORD)")
            raise RegistryAuthError("Registry token service rejected credentials")
        self._raise_for_status(response, "fetch registry token")

        try:
            body = response.json()
        except ValueError as e:
            # Typically an HTML error page from a proxy in front of the token service
            raise RegistryUnavailableError(f"Token service returned a non-JSON reply: {e}")
        if not isinstance(body, dict):
            raise RegistryUnavailableError("Token service returned an unexpected reply")
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryAuthError("Token service returned no token")
        return token

    def _basic_auth(self) -> str:
        if not (self.username and self.password):
            raise RegistryAuthError("Registry requires credentials (set REGISTRY_USERNAME and REGISTRY_PASSWORD)")
        credentials = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return f"Basic {credentials}"

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise RegistryUnavailableError(f"Registry unreachable ({method} {url}): {e}")

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str):
        status = response.status_code
        if status < 400:
            return
        if status == 429 or status >= 500:
            raise RegistryUnavailableError(f"Registry unavailable while trying to {action}: HTTP {status}")
        if status in (401, 403):
            raise RegistryAuthError(f"Not authorized to {action}: HTTP {status}")
        raise PushError(f"Registry refused to {action}: HTTP {status} {response.text[:200]}")
