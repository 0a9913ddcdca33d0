"""SonarCloud project key discovery.

Maps a Bitbucket ``workspace/repo`` to a SonarCloud project key by trying,
in order:

1. an explicit key (``--project-key``);
2. ``SONARCLOUD_PROJECT_KEY`` or ``SONARCLOUD_PROJECT_KEY_<WORKSPACE>_<REPO>``;
3. the ``projects`` mapping of the config file;
4. ``sonar.projectKey`` in a local ``sonar-project.properties``-style file;
5. ``sonar.projectKey`` / ``sonarjs.projectKey`` in a local ``package.json``;
6. the heuristic ``<workspace>_<repo>``.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from sonarcloud_report.config import Config

logger = logging.getLogger(__name__)

PROPERTY_FILES = ("sonar-project.properties", ".sonarcloud.properties", "sonar.properties")

_VALID_KEY_RE = re.compile(r"^[A-Za-z0-9\-_.]{1,400}$")
_INVALID_CHARS_RE = re.compile(r"[^A-Za-z0-9\-_.]")


class DiscoveryError(Exception):
    """Raised when no project key can be found for a repository."""


@dataclass(frozen=True)
class DiscoveryResult:
    project_key: str
    strategy: str
    source: str


def is_valid_project_key(key: str) -> bool:
    return bool(key) and _VALID_KEY_RE.fullmatch(key) is not None


def sanitize_project_key(key: str) -> str:
    key = _INVALID_CHARS_RE.sub("_", key)
    key = re.sub(r"_+", "_", key)
    return key.strip("_")


class ProjectKeyDiscovery:
    def __init__(
        self,
        config: Config | None = None,
        explicit_key: str | None = None,
        search_dir: str | Path = ".",
    ) -> None:
        self._config = config
        self._explicit_key = explicit_key
        self._search_dir = Path(search_dir)

    def discover(self, workspace: str, repo: str, commit_hash: str | None = None) -> DiscoveryResult:
        """Return the first project key found for *workspace*/*repo*.

        *commit_hash* identifies the analysed commit; it is accepted for
        interface compatibility and not used by the local strategies.

        Raises:
            DiscoveryError: if no strategy yields a valid key.
        """
        strategies = (
            ("Explicit", self._from_explicit),
            ("Environment Variable", self._from_environment),
            ("Configuration File", self._from_config),
            ("Properties File", self._from_properties),
            ("package.json", self._from_package_json),
            ("Heuristic Naming", self._from_heuristic),
        )
        for name, strategy in strategies:
            found = strategy(workspace, repo)
            if found is None:
                continue
            key, source = found
            if is_valid_project_key(key):
                logger.info("Project key '%s' found via %s (%s)", key, name, source)
                return DiscoveryResult(project_key=key, strategy=name, source=source)
            logger.debug("Ignoring invalid project key '%s' from %s", key, name)

        raise DiscoveryError(f"Unable to discover SonarCloud project key for {workspace}/{repo}")

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _from_explicit(self, workspace: str, repo: str):
        if self._explicit_key:
            return self._explicit_key, "--project-key"
        return None

    def _from_environment(self, workspace: str, repo: str):
        key = os.environ.get("SONARCLOUD_PROJECT_KEY")
        if key:
            return key, "SONARCLOUD_PROJECT_KEY"
        var = "SONARCLOUD_PROJECT_KEY_{}_{}".format(
            workspace.replace("-", "_").upper(), repo.replace("-", "_").upper()
        )
        key = os.environ.get(var)
        if key:
            return key, var
        return None

    def _from_config(self, workspace: str, repo: str):
        if self._config is None:
            return None
        key = self._config.project_for(workspace, repo)
        return (key, "config") if key else None

    def _from_properties(self, workspace: str, repo: str):
        for filename in PROPERTY_FILES:
            path = self._search_dir / filename
            if not path.is_file():
                continue
            for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
                line = line.strip()
                if line.startswith("sonar.projectKey="):
                    key = line.removeprefix("sonar.projectKey=").strip()
                    if key:
                        return key, filename
        return None

    def _from_package_json(self, workspace: str, repo: str):
        path = self._search_dir / "package.json"
        if not path.is_file():
            return None
        try:
            pkg = json.loads(path.read_text(encoding="utf-8"))
        except ValueError:
            logger.debug("Ignoring unreadable %s", path)
            return None
        if not isinstance(pkg, dict):
            return None
        for section in ("sonarjs", "sonar"):
            block = pkg.get(section)
            if isinstance(block, dict) and block.get("projectKey"):
                return str(block["projectKey"]), "package.json"
        return None

    def _from_heuristic(self, workspace: str, repo: str):
        key = sanitize_project_key(f"{workspace}_{repo}")
        return (key, "heuristic") if key else None
