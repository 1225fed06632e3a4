import pytest
import requests

from fakes import FakeResponse, FakeSession, release, releases_url
from generate_manifest import (
    ReleaseFetcher,
    ReleaseSummary,
    RepositoryRef,
    TransportError,
    summarize_releases,
)

REPO = RepositoryRef("owner", "plugin")


def test_no_releases_returns_sentinel():
    assert summarize_releases([]) == ReleaseSummary("0.0.1", 0)


def test_first_stable_release_is_latest():
    releases = [
        release("v2.0", prerelease=True),
        release("v1.9"),
        release("v1.8"),
    ]
    assert summarize_releases(releases).version == "v1.9"


def test_falls_back_to_first_prerelease():
    assert summarize_releases([release("v3.0-beta", prerelease=True)]).version == "v3.0-beta"


def test_missing_tag_uses_default_version():
    releases = [{"prerelease": False, "assets": []}]
    assert summarize_releases(releases).version == "0.0.1"


def test_downloads_sum_every_release_and_asset():
    releases = [
        release("v2.0", prerelease=True, downloads=(5, 7)),
        release("v1.9", downloads=(10,)),
        release("v1.8", downloads=()),
        release("v1.7", downloads=(1, 2, 3)),
    ]
    assert summarize_releases(releases).total_downloads == 28


def test_pagination_stops_after_short_page(config):
    full_page = [release(f"v1.{i}", downloads=(1,)) for i in range(100)]
    session = FakeSession({releases_url("owner/plugin"): [full_page, []]})

    releases = ReleaseFetcher(config, session).fetch_releases(REPO)

    assert len(releases) == 100
    assert [params["page"] for _, params in session.calls] == [1, 2]
    assert all(params["per_page"] == 100 for _, params in session.calls)


def test_pagination_accumulates_in_order(config):
    first = [release(f"v2.{i}", downloads=(1,)) for i in range(100)]
    second = [release("v1.0", downloads=(50,))]
    session = FakeSession({releases_url("owner/plugin"): [first, second]})

    summary = ReleaseFetcher(config, session).fetch_release_summary(REPO)

    assert len(session.calls) == 2
    assert summary == ReleaseSummary("v2.0", 150)


def test_empty_repository_makes_one_request(config):
    session = FakeSession({releases_url("owner/plugin"): [[]]})

    summary = ReleaseFetcher(config, session).fetch_release_summary(REPO)

    assert summary == ReleaseSummary("0.0.1", 0)
    assert len(session.calls) == 1


def test_failed_page_raises_transport_error(config):
    session = FakeSession({releases_url("owner/plugin"): FakeResponse({}, status_code=403)})

    with pytest.raises(TransportError) as excinfo:
        ReleaseFetcher(config, session).fetch_release_summary(REPO)

    assert excinfo.value.status == 403
    assert excinfo.value.url == releases_url("owner/plugin")


def test_connection_error_raises_transport_error(config):
    session = FakeSession({releases_url("owner/plugin"): requests.exceptions.ConnectionError("refused")})

    with pytest.raises(TransportError):
        ReleaseFetcher(config, session).fetch_release_summary(REPO)


@pytest.mark.parametrize("url", [
    "https://github.com/owner/plugin",
    "https://github.com/owner/plugin/",
    "https://github.com/owner/plugin.git",
    "https://github.com/owner/plugin/tree/main",
])
def test_repository_ref_parse(url):
    repo = RepositoryRef.parse(url)
    assert repo == REPO
    assert repo.url == "https://github.com/owner/plugin"
    assert repo.latest_download_url == "https://github.com/owner/plugin/releases/latest/download/latest.zip"


@pytest.mark.parametrize("url", ["https://github.com/owner", "https://gitlab.com/owner/plugin", ""])
def test_repository_ref_rejects_bad_urls(url):
    with pytest.raises(ValueError):
        RepositoryRef.parse(url)


def test_unexpected_releases_payload_raises_transport_error(config):
    session = FakeSession({releases_url("owner/plugin"): FakeResponse({"message": "Moved Permanently"})})

    with pytest.raises(TransportError):
        ReleaseFetcher(config, session).fetch_release_summary(REPO)


def test_null_download_counts_and_assets_count_as_zero():
    releases = [
        {"tag_name": "v1.1", "prerelease": False, "assets": [{"download_count": None}, {"download_count": 3}]},
        {"tag_name": "v1.0", "prerelease": False, "assets": None},
    ]
    assert summarize_releases(releases) == ReleaseSummary("v1.1", 3)
