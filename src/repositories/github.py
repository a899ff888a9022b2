"""
Remote registry repository - provider releases published as GitHub release assets.

Provider URLs have the form
``https://github.com/<owner>/<repo>/releases/<latest|tag>/<components file>``.
When the URL points at ``latest`` the default version is the highest
semantic-version tag among published, non-prerelease releases.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

from errors import InvalidVersionError, NotFoundError, RepositoryError
from provider_config import ProviderConfig
from repositories.base import Repository
from versions import SemanticVersion, parse_semantic

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
LATEST_RELEASE = "latest"
TOKEN_VARIABLE = "GITHUB_TOKEN"


def parse_release_url(url: str) -> Tuple[str, str, str, str, str]:
    """
    Split a release asset URL into its parts.

    Returns:
        Tuple of (download_base, owner, repo, version, components_path).

    Raises:
        RepositoryError: If the URL is not a release asset URL.
    """
    parsed = urlparse(url)
    parts = [p for p in parsed.path.split("/") if p]
    if not parsed.scheme or not parsed.netloc:
        raise RepositoryError(f"invalid provider url {url!r}: missing scheme or host")
    if len(parts) < 5 or parts[2] != "releases":
        raise RepositoryError(
            f"invalid provider url {url!r}: expected "
            f"<host>/<owner>/<repo>/releases/<version>/<path>"
        )
    owner, repo, version = parts[0], parts[1], parts[3]
    components_path = "/".join(parts[4:])
    return f"{parsed.scheme}://{parsed.netloc}", owner, repo, version, components_path


class RemoteRegistryRepository(Repository):
    """Repository reading release assets from GitHub."""

    def __init__(
        self,
        owner: str,
        repo: str,
        default_version: str,
        components_path: str,
        download_base_url: str = "https://github.com",
        api_base_url: str = DEFAULT_API_URL,
        token: Optional[str] = None,
        timeout: int = 30,
    ):
        self.owner = owner
        self.repo = repo
        self._default_version = default_version
        self._components_path = components_path
        self.download_base_url = download_base_url.rstrip("/")
        self.api_base_url = api_base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._cache: Dict[Tuple[str, str], bytes] = {}

    @classmethod
    async def create(
        cls,
        provider_config: ProviderConfig,
        variables: Dict[str, str],
        api_base_url: str = DEFAULT_API_URL,
        timeout: int = 30,
        token: Optional[str] = None,
    ) -> "RemoteRegistryRepository":
        """
        Build a repository for a provider, resolving its default version.

        Args:
            provider_config: Registry configuration of the provider
            variables: Configuration variables (GITHUB_TOKEN is honoured)
            api_base_url: GitHub API base URL
            timeout: Request timeout in seconds
            token: Token used when variables do not provide one

        Raises:
            RepositoryError: If the URL is invalid or no release can be found.
        """
        download_base, owner, repo, version, path = parse_release_url(
            provider_config.url
        )
        instance = cls(
            owner=owner,
            repo=repo,
            default_version=version,
            components_path=path,
            download_base_url=download_base,
            api_base_url=api_base_url,
            token=variables.get(TOKEN_VARIABLE) or token,
            timeout=timeout,
        )
        if version == LATEST_RELEASE:
            instance._default_version = await instance._latest_release()
        logger.debug(
            f"Using {owner}/{repo} release {instance._default_version} "
            f"for provider {provider_config.manifest_label}"
        )
        return instance

    @property
    def default_version(self) -> str:
        return self._default_version

    @property
    def components_path(self) -> str:
        return self._components_path

    async def get_file(self, version: str, path: str) -> bytes:
        key = (version, path)
        if key in self._cache:
            return self._cache[key]

        url = (
            f"{self.download_base_url}/{self.owner}/{self.repo}"
            f"/releases/download/{version}/{path}"
        )
        async with aiohttp.ClientSession(timeout=self._client_timeout()) as session:
            async with session.get(url, headers=self._get_headers()) as response:
                if response.status == 404:
                    raise NotFoundError(
                        f"file {path!r} not found in release {version} "
                        f"of {self.owner}/{self.repo}"
                    )
                if response.status != 200:
                    raise RepositoryError(
                        f"failed to download {url}: HTTP {response.status}"
                    )
                content = await response.read()

        self._cache[key] = content
        return content

    # Private helper methods

    def _client_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout)

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for GitHub requests."""
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _list_releases(self) -> List[Dict[str, Any]]:
        url = f"{self.api_base_url}/repos/{self.owner}/{self.repo}/releases"
        async with aiohttp.ClientSession(timeout=self._client_timeout()) as session:
            async with session.get(
                url, headers=self._get_headers(), params={"per_page": 100}
            ) as response:
                if response.status != 200:
                    raise RepositoryError(
                        f"failed to list releases of {self.owner}/{self.repo}: "
                        f"HTTP {response.status} - {await response.text()}"
                    )
                return await response.json()

    async def _latest_release(self) -> str:
        """Highest published, non-prerelease semantic version tag."""
        latest: Optional[SemanticVersion] = None
        for release in await self._list_releases():
            if release.get("draft") or release.get("prerelease"):
                continue
            try:
                version = parse_semantic(release.get("tag_name", ""))
            except InvalidVersionError:
                continue
            if version.is_prerelease:
                continue
            if latest is None or latest < version:
                latest = version

        if latest is None:
            raise RepositoryError(
                f"failed to find releases tagged with a valid semantic version "
                f"number for {self.owner}/{self.repo}"
            )
        return str(latest)
