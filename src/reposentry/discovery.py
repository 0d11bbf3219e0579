import logging
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from .constants import APP_NAME
from .errors import GitTimeoutError, StateDetectionError
from .git_wrapper import GitRepo
from .models import RepositoryDescriptor

logger = logging.getLogger(APP_NAME)

RepositoryFilter = Callable[[RepositoryDescriptor], bool]


class RepositoryDiscovery(Protocol):
    """Anything that can list the repositories to keep in sync."""

    def discover_repositories(
        self, filter: RepositoryFilter | None = None
    ) -> list[RepositoryDescriptor]: ...


class ManifestDiscovery:
    """Serves the repositories listed under `[[repositories]]` in the config."""

    def __init__(self, repositories: list[RepositoryDescriptor]):
        self.repositories = list(repositories)

    def discover_repositories(
        self, filter: RepositoryFilter | None = None
    ) -> list[RepositoryDescriptor]:
        return [r for r in self.repositories if filter is None or filter(r)]


class LocalDiscovery:
    """Finds checkouts already present under a base directory.

    Understands both layouts: `base/owner/name` and `base/owner-name`. The
    descriptor's remote URL is read from the checkout itself.
    """

    def __init__(
        self,
        base_dir: Path,
        separate_org_dirs: bool = True,
        timeout: float | None = None,
    ):
        self.base_dir = base_dir
        self.separate_org_dirs = separate_org_dirs
        self.timeout = timeout

    def discover_repositories(
        self, filter: RepositoryFilter | None = None
    ) -> list[RepositoryDescriptor]:
        if not self.base_dir.is_dir():
            return []

        found = []
        for path in self._candidate_paths():
            descriptor = self._describe(path)
            if descriptor and (filter is None or filter(descriptor)):
                found.append(descriptor)
        return found

    def _candidate_paths(self) -> list[Path]:
        if self.separate_org_dirs:
            return sorted(
                repo
                for owner in self.base_dir.iterdir()
                if owner.is_dir()
                for repo in owner.iterdir()
                if (repo / ".git").exists()
            )
        return sorted(p for p in self.base_dir.iterdir() if (p / ".git").exists())

    def _describe(self, path: Path) -> RepositoryDescriptor | None:
        try:
            url = GitRepo(path, timeout=self.timeout).remote_url()
        except StateDetectionError:
            return None
        except GitTimeoutError as e:
            logger.warning(f"Skipping {path}: {e}")
            return None
        if not url:
            logger.warning(f"Skipping {path}: no remote configured")
            return None

        if self.separate_org_dirs:
            owner, name = path.parent.name, path.name
        else:
            owner, sep, name = path.name.partition("-")
            if not sep:
                logger.warning(f"Skipping {path}: expected an 'owner-name' directory")
                return None
        return RepositoryDescriptor(name=name, owner=owner, remote_url=url)
