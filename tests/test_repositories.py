"""Unit tests for the repositories package."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from errors import InvalidVersionError, MissingKeyError, NotFoundError, RepositoryError
from provider import FetchConfig, ObjectReference, ProviderKind
from provider_config import ProviderConfig
from repositories import (
    METADATA_FILE,
    ConfigObject,
    InMemoryRepository,
    RemoteRegistryRepository,
    uses_config_object,
)
from repositories.github import parse_release_url
from repositories.memory import VERSION_LABEL, parse_selector


def mock_session(response):
    """Mock aiohttp.ClientSession whose get() yields response."""
    session = MagicMock()
    session.__aenter__.return_value = session
    session.get.return_value.__aenter__.return_value = response
    return session


def mock_response(status=200, body=b"", json_data=None):
    response = MagicMock()
    response.status = status
    response.read = AsyncMock(return_value=body)
    response.json = AsyncMock(return_value=json_data)
    response.text = AsyncMock(return_value="error body")
    return response


class TestUsesConfigObject:
    """Tests for uses_config_object."""

    def test_none(self):
        assert uses_config_object(None) is False

    def test_url_only(self):
        assert uses_config_object(FetchConfig(url="https://example.com")) is False

    def test_config_map(self):
        assert uses_config_object(FetchConfig(config_map=ObjectReference(name="x")))

    def test_selector_and_labels(self):
        assert uses_config_object(FetchConfig(selector="a=b"))
        assert uses_config_object(FetchConfig(match_labels={"a": "b"}))


class TestParseSelector:
    """Tests for parse_selector."""

    def test_empty(self):
        assert parse_selector(None) == {}
        assert parse_selector("") == {}

    def test_equality_terms(self):
        assert parse_selector("provider=aws, tier==stable") == {
            "provider": "aws",
            "tier": "stable",
        }

    @pytest.mark.parametrize("selector", ["a!=b", "novalue", "=b", "a in (b)"])
    def test_unsupported_terms(self, selector):
        with pytest.raises(ValueError):
            parse_selector(selector)

    @pytest.mark.parametrize("selector", [",", " , ", ",,"])
    def test_selector_without_terms(self, selector):
        with pytest.raises(ValueError, match="empty selector"):
            parse_selector(selector)


class TestInMemoryRepository:
    """Tests for InMemoryRepository."""

    def config_object(self, name="v1.5.0", labels=None, data=None):
        return ConfigObject(
            name=name,
            namespace="capa-system",
            labels=labels or {},
            data=data if data is not None else {"metadata": "m", "components": "c"},
        )

    @pytest.mark.asyncio
    async def test_version_from_name(self):
        repo = InMemoryRepository.from_config_object(self.config_object())
        assert repo.default_version == "v1.5.0"
        assert await repo.get_file("v1.5.0", METADATA_FILE) == b"m"
        assert await repo.get_file("v1.5.0", repo.components_path) == b"c"

    def test_version_label_wins(self):
        repo = InMemoryRepository.from_config_object(
            self.config_object(name="aws-manifests", labels={VERSION_LABEL: "v1.4.0"})
        )
        assert repo.default_version == "v1.4.0"

    def test_invalid_version_from_name(self):
        with pytest.raises(InvalidVersionError) as exc_info:
            InMemoryRepository.from_config_object(self.config_object(name="aws-manifests"))
        assert "from the Name" in str(exc_info.value)

    def test_invalid_version_from_label(self):
        with pytest.raises(InvalidVersionError) as exc_info:
            InMemoryRepository.from_config_object(
                self.config_object(labels={VERSION_LABEL: "latest"})
            )
        assert f"from the Label {VERSION_LABEL}" in str(exc_info.value)

    def test_missing_metadata(self):
        with pytest.raises(MissingKeyError) as exc_info:
            InMemoryRepository.from_config_object(
                self.config_object(data={"components": "c"})
            )
        assert exc_info.value.key == "metadata"

    def test_missing_components(self):
        with pytest.raises(MissingKeyError) as exc_info:
            InMemoryRepository.from_config_object(
                self.config_object(data={"metadata": "m"})
            )
        assert exc_info.value.key == "components"

    def test_missing_object(self):
        with pytest.raises(NotFoundError) as exc_info:
            InMemoryRepository.from_config_object(None, "capa-system/manifests")
        assert "capa-system/manifests" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unknown_file(self):
        repo = InMemoryRepository().with_file("v1.0.0", "a.yaml", b"a")
        with pytest.raises(NotFoundError):
            await repo.get_file("v2.0.0", "a.yaml")


class TestParseReleaseUrl:
    """Tests for parse_release_url."""

    def test_latest(self):
        assert parse_release_url(
            "https://github.com/org/repo/releases/latest/infrastructure-components.yaml"
        ) == ("https://github.com", "org", "repo", "latest", "infrastructure-components.yaml")

    def test_tag_with_nested_path(self):
        parts = parse_release_url("https://github.com/org/repo/releases/v1.0.0/dir/c.yaml")
        assert parts[3] == "v1.0.0"
        assert parts[4] == "dir/c.yaml"

    @pytest.mark.parametrize(
        "url",
        [
            "github.com/org/repo/releases/latest/c.yaml",
            "https://github.com/org/repo/tags/latest/c.yaml",
            "https://github.com/org/repo",
        ],
    )
    def test_invalid(self, url):
        with pytest.raises(RepositoryError):
            parse_release_url(url)


class TestRemoteRegistryRepository:
    """Tests for RemoteRegistryRepository."""

    def provider_config(self, version="latest"):
        return ProviderConfig(
            "aws",
            ProviderKind.INFRASTRUCTURE,
            f"https://github.com/org/capa/releases/{version}/infrastructure-components.yaml",
        )

    @pytest.mark.asyncio
    async def test_create_with_pinned_tag_skips_release_listing(self):
        with patch("repositories.github.aiohttp.ClientSession") as session_cls:
            repo = await RemoteRegistryRepository.create(
                self.provider_config("v1.4.0"), {}
            )
        session_cls.assert_not_called()
        assert repo.default_version == "v1.4.0"
        assert repo.components_path == "infrastructure-components.yaml"

    @pytest.mark.asyncio
    async def test_create_resolves_latest(self):
        releases = [
            {"tag_name": "v1.4.0"},
            {"tag_name": "v1.6.0-rc.1"},
            {"tag_name": "v1.7.0", "prerelease": True},
            {"tag_name": "v1.8.0", "draft": True},
            {"tag_name": "v1.5.1"},
            {"tag_name": "not-a-version"},
        ]
        session = mock_session(mock_response(json_data=releases))
        with patch("repositories.github.aiohttp.ClientSession", return_value=session):
            repo = await RemoteRegistryRepository.create(self.provider_config(), {})
        assert repo.default_version == "v1.5.1"

    @pytest.mark.asyncio
    async def test_create_without_valid_release(self):
        session = mock_session(mock_response(json_data=[{"tag_name": "nightly"}]))
        with patch("repositories.github.aiohttp.ClientSession", return_value=session):
            with pytest.raises(RepositoryError):
                await RemoteRegistryRepository.create(self.provider_config(), {})

    @pytest.mark.asyncio
    async def test_token_from_variables(self):
        repo = await RemoteRegistryRepository.create(
            self.provider_config("v1.4.0"), {"GITHUB_TOKEN": "abc"}, token="fallback"
        )
        assert repo._get_headers()["Authorization"] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_get_file_downloads_and_caches(self):
        repo = RemoteRegistryRepository("org", "capa", "v1.4.0", "c.yaml")
        session = mock_session(mock_response(body=b"kind: Namespace"))
        with patch(
            "repositories.github.aiohttp.ClientSession", return_value=session
        ) as session_cls:
            first = await repo.get_file("v1.4.0", "c.yaml")
            second = await repo.get_file("v1.4.0", "c.yaml")

        assert first == second == b"kind: Namespace"
        assert session_cls.call_count == 1
        url = session.get.call_args[0][0]
        assert url == "https://github.com/org/capa/releases/download/v1.4.0/c.yaml"

    @pytest.mark.asyncio
    async def test_get_file_not_found(self):
        repo = RemoteRegistryRepository("org", "capa", "v1.4.0", "c.yaml")
        session = mock_session(mock_response(status=404))
        with patch("repositories.github.aiohttp.ClientSession", return_value=session):
            with pytest.raises(NotFoundError):
                await repo.get_file("v1.4.0", "c.yaml")

    @pytest.mark.asyncio
    async def test_get_file_server_error(self):
        repo = RemoteRegistryRepository("org", "capa", "v1.4.0", "c.yaml")
        session = mock_session(mock_response(status=502))
        with patch("repositories.github.aiohttp.ClientSession", return_value=session):
            with pytest.raises(RepositoryError):
                await repo.get_file("v1.4.0", "c.yaml")
