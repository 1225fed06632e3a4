import argparse
import json
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests


class ManifestError(Exception):
    """Base class for manifest generation errors."""


class TransportError(ManifestError):
    """A manifest or release request did not succeed."""

    def __init__(self, url: str, status: Optional[int] = None, reason: str = ""):
        self.url = url
        self.status = status
        detail = f"HTTP {status}" if status is not None else reason
        super().__init__(f"Failed to fetch {url}: {detail}")


class ChangelogUnavailable(ManifestError):
    """The changelog document could not be retrieved."""


class MalformedInputError(ManifestError):
    """The plugin source list is not usable."""


@dataclass
class Config:
    """Configuration settings for the combined manifest generator."""
    source_file: Path
    output_file: Path
    api_url: str = "https://api.github.com"
    raw_url: str = "https://raw.githubusercontent.com"
    changelog_path: str = "CHANGELOG.md"
    changelog_ref: str = "HEAD"
    page_size: int = 100
    default_version: str = "0.0.1"
    request_timeout: float = 30

    @classmethod
    def load_default(cls, source_file: Optional[str] = None, output_file: Optional[str] = None) -> 'Config':
        """Load default configuration, letting explicit paths win over the environment."""
        source = source_file or os.environ.get("PLUGIN_SOURCES_FILE", "./plugins.json")
        output = output_file or os.environ.get("PLUGIN_MANIFEST_FILE", "./manifest.json")
        return cls(source_file=Path(source), output_file=Path(output))


@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    name: str

    @classmethod
    def parse(cls, url: str) -> 'RepositoryRef':
        """Parse a GitHub repository URL into its owner and name."""
        repo_path = url.strip().replace("https://github.com/", "").strip("/")
        parts = repo_path.split("/")
        if len(parts) < 2 or not parts[0] or not parts[1] or ":" in parts[0]:
            raise ValueError(f"Not a GitHub repository URL: {url}")
        name = parts[1][:-len(".git")] if parts[1].endswith(".git") else parts[1]
        return cls(owner=parts[0], name=name)

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"

    @property
    def latest_download_url(self) -> str:
        return f"{self.url}/releases/latest/download/latest.zip"

    def __str__(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class PluginSourceEntry:
    manifest: str
    repo: RepositoryRef


@dataclass(frozen=True)
class ReleaseSummary:
    version: str
    total_downloads: int


def _get(session: requests.Session, url: str, timeout: float, **kwargs) -> requests.Response:
    """GET a URL, turning non-success statuses and request errors into TransportError."""
    try:
        response = session.get(url, timeout=timeout, **kwargs)
    except requests.exceptions.RequestException as e:
        raise TransportError(url, reason=str(e)) from e
    if not response.ok:
        raise TransportError(url, status=response.status_code)
    return response


def _get_json(session: requests.Session, url: str, timeout: float, **kwargs) -> Any:
    response = _get(session, url, timeout, **kwargs)
    try:
        return response.json()
    except ValueError as e:
        raise TransportError(url, reason=f"invalid JSON: {e}") from e


class ReleaseFetcher:
    """Resolves the latest version and total download count from GitHub releases."""

    def __init__(self, config: Config, session: requests.Session):
        self.config = config
        self.session = session

    def fetch_releases(self, repo: RepositoryRef) -> List[Dict[str, Any]]:
        """Fetch every release of a repository, page by page.

        GitHub lists releases newest first. Pages are assumed stable while we
        walk them; a release published mid-walk may be seen twice or not at all.
        """
        api_url = f"{self.config.api_url}/repos/{repo.owner}/{repo.name}/releases"
        releases: List[Dict[str, Any]] = []
        page = 1

        while True:
            page_releases = _get_json(
                self.session,
                api_url,
                self.config.request_timeout,
                params={"per_page": self.config.page_size, "page": page},
            )
            if not isinstance(page_releases, list):
                raise TransportError(api_url, reason="unexpected releases payload")
            releases.extend(page_releases)

            if len(page_releases) != self.config.page_size:
                break
            page += 1

        return releases

    def fetch_release_summary(self, repo: RepositoryRef) -> ReleaseSummary:
        """Fetch releases for a repository and reduce them to a ReleaseSummary."""
        print(f"Fetching releases for {repo}")
        releases = self.fetch_releases(repo)
        summary = summarize_releases(releases, self.config.default_version)

        for release in releases:
            tag = release.get("tag_name") or "<no-tag>"
            print(f"  {tag}: {_release_downloads(release)} downloads")

        print(f"Latest version for {repo}: {summary.version} ({summary.total_downloads} total downloads)")
        return summary


def _release_downloads(release: Dict[str, Any]) -> int:
    return sum(asset.get("download_count") or 0 for asset in release.get("assets") or [])


def summarize_releases(releases: Sequence[Dict[str, Any]], default_version: str = "0.0.1") -> ReleaseSummary:
    """Pick the first stable release (else the first release) and total every asset download."""
    if not releases:
        return ReleaseSummary(version=default_version, total_downloads=0)

    latest = next((r for r in releases if not r.get("prerelease")), releases[0])
    version = latest.get("tag_name") or default_version
    total_downloads = sum(_release_downloads(release) for release in releases)

    return ReleaseSummary(version=version, total_downloads=total_downloads)


class ChangelogState(Enum):
    INCLUDING = "including"
    SKIPPING = "skipping"


UNRELEASED_MARKER = "UNRELEASED:"


def _is_version_header(line: str) -> bool:
    return line.startswith("v") and "(" in line and ")" in line


def filter_unreleased(text: str) -> Optional[str]:
    """Drop the UNRELEASED section from changelog text.

    Skipping starts on a line beginning with ``UNRELEASED:`` and stops at the
    next version header (``v...`` with parentheses), which is kept. There is
    no nesting: an unterminated section runs to the end of the text.
    """
    state = ChangelogState.INCLUDING
    kept = []

    for line in text.splitlines():
        if state is ChangelogState.INCLUDING and line.startswith(UNRELEASED_MARKER):
            state = ChangelogState.SKIPPING
        elif state is ChangelogState.SKIPPING and _is_version_header(line):
            state = ChangelogState.INCLUDING

        if state is ChangelogState.INCLUDING:
            kept.append(line)

    changelog = "\n".join(kept).strip()
    return changelog or None


class ChangelogFetcher:
    """Fetches CHANGELOG.md from a repository's default branch."""

    def __init__(self, config: Config, session: requests.Session):
        self.config = config
        self.session = session

    def changelog_url(self, repo: RepositoryRef) -> str:
        return f"{self.config.raw_url}/{repo.owner}/{repo.name}/{self.config.changelog_ref}/{self.config.changelog_path}"

    def _download_changelog(self, repo: RepositoryRef) -> str:
        url = self.changelog_url(repo)
        try:
            response = self.session.get(url, timeout=self.config.request_timeout)
        except requests.exceptions.RequestException as e:
            raise ChangelogUnavailable(f"{url}: {e}") from e
        if not response.ok:
            raise ChangelogUnavailable(f"{url}: HTTP {response.status_code}")
        return response.text

    def fetch_changelog(self, repo: RepositoryRef) -> Optional[str]:
        """Return the filtered changelog for a repository, or None if there is none."""
        try:
            text = self._download_changelog(repo)
        except ChangelogUnavailable as e:
            print(f"No changelog for {repo} ({e})")
            return None
        return filter_unreleased(text)


def load_plugin_sources(path: Path) -> List[PluginSourceEntry]:
    """Load the ordered list of plugin sources from a JSON file."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise MalformedInputError(f"{path} is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise MalformedInputError(f"{path} must contain a list of plugin sources")

    sources = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise MalformedInputError(f"Entry {index} in {path} is not an object")
        manifest_url = entry.get("manifest")
        repo_url = entry.get("repo")
        if not isinstance(manifest_url, str) or not isinstance(repo_url, str):
            raise MalformedInputError(f"Entry {index} in {path} needs 'manifest' and 'repo' strings")
        try:
            repo = RepositoryRef.parse(repo_url)
        except ValueError as e:
            raise MalformedInputError(f"Entry {index} in {path}: {e}") from e
        sources.append(PluginSourceEntry(manifest=manifest_url, repo=repo))

    print(f"Loaded {len(sources)} plugin sources from {path}")
    return sources


def load_existing_manifest(path: Path) -> List[Dict[str, Any]]:
    """Load the previously written combined manifest, or an empty list if there is none."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            existing = json.load(f)
    except FileNotFoundError:
        print(f"No existing manifest at {path}, starting fresh")
        return []

    print(f"Loaded {len(existing)} existing records from {path}")
    return existing


def _has_plugin_name(manifest: Any) -> bool:
    """A manifest needs a string Name or InternalName, and neither may be a non-string."""
    if not isinstance(manifest, dict):
        return False
    names = [manifest.get("Name"), manifest.get("InternalName")]
    if all(name is None for name in names):
        return False
    return all(name is None or isinstance(name, str) for name in names)


def _current_millis() -> int:
    return int(time.time() * 1000)


class ManifestReconciler:
    """Merges fetched plugin manifests with release data and the previous manifest."""

    def __init__(self, config: Config, session: requests.Session,
                 release_fetcher: Optional[ReleaseFetcher] = None,
                 changelog_fetcher: Optional[ChangelogFetcher] = None,
                 clock: Callable[[], int] = _current_millis):
        self.config = config
        self.session = session
        self.release_fetcher = release_fetcher or ReleaseFetcher(config, session)
        self.changelog_fetcher = changelog_fetcher or ChangelogFetcher(config, session)
        self.clock = clock

    def reconcile(self, sources: Sequence[PluginSourceEntry],
                  existing: Sequence[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[str]]:
        """Build enriched records for every source, returning them with the changed plugin names."""
        existing_by_repo: Dict[str, Dict[str, Any]] = {}
        for record in existing:
            existing_by_repo.setdefault(record.get("RepoUrl"), record)

        combined = []
        updated_plugins = []

        for entry in sources:
            print(f"Processing {entry.repo} ({entry.manifest})")
            try:
                manifest = self.fetch_manifest(entry)
            except TransportError as e:
                print(f"Failed to fetch manifest: {entry.manifest} ({e})")
                continue

            if not _has_plugin_name(manifest):
                print(f"Manifest at {entry.manifest} has no usable Name or InternalName - skipping")
                continue

            try:
                release = self.release_fetcher.fetch_release_summary(entry.repo)
            except TransportError as e:
                print(f"Failed to fetch releases for {entry.repo} ({e}) - skipping")
                continue

            changelog = self.changelog_fetcher.fetch_changelog(entry.repo)
            existing_record = existing_by_repo.get(entry.repo.url)
            version_changed = existing_record is None or existing_record.get("AssemblyVersion") != release.version

            if version_changed:
                display_name = manifest.get("Name")
                if display_name is None:
                    display_name = manifest["InternalName"]
                updated_plugins.append(f"{display_name} {release.version}")

            combined.append(self.enrich(manifest, entry.repo, release, changelog, existing_record, version_changed))

        return combined, updated_plugins

    def fetch_manifest(self, entry: PluginSourceEntry) -> Any:
        return _get_json(self.session, entry.manifest, self.config.request_timeout)

    def enrich(self, manifest: Dict[str, Any], repo: RepositoryRef, release: ReleaseSummary,
               changelog: Optional[str], existing_record: Optional[Dict[str, Any]],
               version_changed: bool) -> Dict[str, Any]:
        """Add computed fields to a fetched manifest, carrying over counters when the version is unchanged."""
        download_link = repo.latest_download_url

        if version_changed:
            download_count = release.total_downloads
            last_updated = self.clock()
        else:
            download_count = existing_record.get("DownloadCount")
            if download_count is None:
                download_count = release.total_downloads
            last_updated = existing_record.get("LastUpdated")
            if last_updated is None:
                last_updated = self.clock()

        internal_name = manifest.get("InternalName")
        if internal_name is None:
            internal_name = manifest["Name"].replace(" ", "")

        enriched = dict(manifest)
        enriched.update({
            "InternalName": internal_name,
            "RepoUrl": repo.url,
            "DownloadLinkInstall": download_link,
            "DownloadLinkUpdate": download_link,
            "AssemblyVersion": release.version,
            "DownloadCount": download_count,
            "LastUpdated": last_updated,
        })
        if changelog:
            enriched["Changelog"] = changelog

        return enriched


def write_manifest(path: Path, records: Sequence[Dict[str, Any]]) -> None:
    """Replace the combined manifest file with the given records."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f"{path.name}.tmp"
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(list(records), f, indent=4, ensure_ascii=False)
    os.replace(tmp_path, path)
    print(f"Manifest written to {path}")


def summarize_updates(updated_plugins: Sequence[str]) -> str:
    if updated_plugins:
        return f"Suggested commit message:\n{', '.join(updated_plugins)}"
    return "No plugins updated; no commit message necessary."


class ManifestGenerator:
    """Main class that orchestrates building the combined manifest."""

    def __init__(self, config: Config, session: Optional[requests.Session] = None,
                 clock: Callable[[], int] = _current_millis):
        self.config = config
        self.owns_session = session is None
        self.session = session or requests.Session()
        self.reconciler = ManifestReconciler(config, self.session, clock=clock)

    def generate(self) -> List[str]:
        """Generate the combined manifest and return the changed plugin names."""
        print("Starting combined manifest generation...")

        sources = load_plugin_sources(self.config.source_file)
        existing = load_existing_manifest(self.config.output_file)

        try:
            combined, updated_plugins = self.reconciler.reconcile(sources, existing)
        finally:
            if self.owns_session:
                self.session.close()

        write_manifest(self.config.output_file, combined)
        print(summarize_updates(updated_plugins))
        print(f"Generated combined manifest with {len(combined)} plugins")
        return updated_plugins


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build a combined plugin manifest from GitHub releases.")
    parser.add_argument("--source", help="Plugin source list (default: ./plugins.json)")
    parser.add_argument("--output", help="Combined manifest to write (default: ./manifest.json)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    config = Config.load_default(source_file=args.source, output_file=args.output)
    generator = ManifestGenerator(config)
    generator.generate()


if __name__ == "__main__":
    main()
