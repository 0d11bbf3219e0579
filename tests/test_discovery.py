from pathlib import Path
from unittest.mock import MagicMock

from conftest import Upstream, git, requires_git
from reposentry.discovery import LocalDiscovery, ManifestDiscovery
from reposentry.errors import GitTimeoutError
from reposentry.models import RepositoryDescriptor

ALPHA = RepositoryDescriptor(name="alpha", owner="octo", remote_url="https://x/octo/alpha")
BETA = RepositoryDescriptor(name="beta", owner="acme", remote_url="https://x/acme/beta")


def test_manifest_filter() -> None:
    """Verifies that the manifest honours an optional filter."""
    discovery = ManifestDiscovery([ALPHA, BETA])

    assert discovery.discover_repositories() == [ALPHA, BETA]
    assert discovery.discover_repositories(lambda r: r.owner == "acme") == [BETA]


def test_local_missing_base_dir(tmp_path: Path) -> None:
    assert LocalDiscovery(tmp_path / "nope").discover_repositories() == []


@requires_git
def test_local_finds_org_layout(tmp_path: Path, upstream: Upstream) -> None:
    """Verifies that `base/owner/name` checkouts are described from their remote."""
    base = tmp_path / "repos"
    (base / "octo").mkdir(parents=True)
    git("clone", upstream.url, str(base / "octo" / "alpha"), cwd=tmp_path)
    (base / "octo" / "notes").mkdir()

    (found,) = LocalDiscovery(base).discover_repositories()

    assert found.full_name == "octo/alpha"
    assert found.remote_url == upstream.url


@requires_git
def test_local_flat_layout(tmp_path: Path, upstream: Upstream) -> None:
    """Verifies `base/owner-name` parsing and that unparseable names are skipped."""
    base = tmp_path / "repos"
    base.mkdir()
    git("clone", upstream.url, str(base / "octo-alpha"), cwd=tmp_path)
    git("clone", upstream.url, str(base / "plain"), cwd=tmp_path)

    (found,) = LocalDiscovery(base, separate_org_dirs=False).discover_repositories()

    assert (found.owner, found.name) == ("octo", "alpha")


@requires_git
def test_local_skips_checkout_without_remote(tmp_path: Path, git_env: Path) -> None:
    base = tmp_path / "repos"
    repo = base / "octo" / "local-only"
    repo.mkdir(parents=True)
    git("init", cwd=repo)

    assert LocalDiscovery(base).discover_repositories() == []


def test_local_uses_timeout(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that every git call made by discovery carries the wall-clock limit."""
    repo = tmp_path / "octo" / "alpha"
    (repo / ".git").mkdir(parents=True)
    git_repo = mocker.patch("reposentry.discovery.GitRepo")
    git_repo.return_value.remote_url.return_value = "https://x/octo/alpha"

    (found,) = LocalDiscovery(tmp_path, timeout=12).discover_repositories()

    git_repo.assert_called_once_with(repo, timeout=12)
    assert found.full_name == "octo/alpha"


def test_local_skips_checkout_on_timeout(tmp_path: Path, mocker: MagicMock) -> None:
    (tmp_path / "octo" / "alpha" / ".git").mkdir(parents=True)
    git_repo = mocker.patch("reposentry.discovery.GitRepo")
    git_repo.return_value.remote_url.side_effect = GitTimeoutError(["remote"], 12)

    assert LocalDiscovery(tmp_path, timeout=12).discover_repositories() == []
