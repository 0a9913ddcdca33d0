"""Configuration loading and validation.

Usage:
    config = load("sonarcloud-config.yaml")       # raises ConfigError on bad config
    key = config.project_for("acme", "api")       # "acme_api" or None
    generate_template("sonarcloud-config.yaml")   # writes example file to disk
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from sonarcloud_report.client import DEFAULT_BASE_URL

DEFAULT_CONFIG_PATH = "sonarcloud-config.yaml"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigError(Exception):
    """Raised when the configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Config dataclass
# ---------------------------------------------------------------------------

@dataclass
class ReportDefaults:
    lines_per_file: int = 5
    truncate_lines: int = 80
    limit: int = 10


@dataclass
class Config:
    url: str
    token: str
    projects: dict[str, str] = field(default_factory=dict)
    defaults: ReportDefaults = field(default_factory=ReportDefaults)

    def project_for(self, workspace: str, repo: str) -> str | None:
        """Return the configured project key for *workspace*/*repo*, if any.

        Tries ``workspace/repo`` first, then lower-cased and underscore
        variants, then the bare repository name.
        """
        full = f"{workspace}/{repo}"
        candidates = (
            full,
            full.lower(),
            full.replace("-", "_"),
            full.lower().replace("-", "_"),
            repo,
            repo.lower(),
            repo.replace("-", "_"),
        )
        for candidate in candidates:
            if candidate in self.projects:
                return self.projects[candidate]
        return None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load(config_path: str = DEFAULT_CONFIG_PATH) -> Config:
    """Load and validate configuration from a YAML file.

    Environment variables SONARCLOUD_URL and SONARCLOUD_TOKEN override file
    values. A missing file is accepted when SONARCLOUD_TOKEN is set.

    Raises:
        ConfigError: if the file is malformed or required fields are absent.
    """
    path = Path(config_path)

    raw: dict = {}
    if path.exists():
        try:
            with path.open(encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Failed to parse '{config_path}': {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"'{config_path}' must be a YAML mapping at the top level.")
    elif not os.environ.get("SONARCLOUD_TOKEN"):
        raise ConfigError(
            f"Config file not found: '{config_path}'\n"
            "Run `python -m sonarcloud_report init` to generate a template, "
            "or set the SONARCLOUD_TOKEN environment variable."
        )

    server = raw.get("server") or {}
    url   = os.environ.get("SONARCLOUD_URL")   or server.get("url")   or DEFAULT_BASE_URL
    token = os.environ.get("SONARCLOUD_TOKEN") or server.get("token", "")

    projects = raw.get("projects") or {}
    if not isinstance(projects, dict):
        raise ConfigError("'projects' must be a mapping of 'workspace/repo' to project key")

    config = Config(
        url=str(url).strip(),
        token=str(token).strip(),
        projects={str(k): str(v) for k, v in projects.items()},
        defaults=_load_defaults(raw.get("report") or {}),
    )
    _validate(config)
    return config


def _load_defaults(section: dict) -> ReportDefaults:
    if not isinstance(section, dict):
        raise ConfigError("'report' must be a mapping")
    defaults = ReportDefaults()
    for name in ("lines_per_file", "truncate_lines", "limit"):
        if name in section:
            value = section[name]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigError(f"'report.{name}' must be a non-negative integer")
            setattr(defaults, name, value)
    return defaults


def _validate(config: Config) -> None:
    """Raise ConfigError if required fields are missing."""
    errors: list[str] = []

    if not config.url:
        errors.append(
            "  - 'server.url' is missing (or set the SONARCLOUD_URL environment variable)"
        )
    if not config.token:
        errors.append(
            "  - 'server.token' is missing (or set the SONARCLOUD_TOKEN environment variable)"
        )

    if errors:
        raise ConfigError("Invalid configuration:\n" + "\n".join(errors))


# ---------------------------------------------------------------------------
# Template generator (used by `init` command)
# ---------------------------------------------------------------------------

TEMPLATE = """\
server:
  url: "https://sonarcloud.io/api"
  token: "squ_xxxxxxxxxxxx"       # Generate at: https://sonarcloud.io/account/security

projects:
  # Bitbucket "workspace/repository": SonarCloud project key
  "my-workspace/my-repo": "my-workspace_my-repo"

report:
  lines_per_file: 5
  truncate_lines: 80
  limit: 10
"""


def generate_template(output_path: str = DEFAULT_CONFIG_PATH) -> None:
    """Write a template sonarcloud-config.yaml to *output_path*.

    Raises:
        ConfigError: if the file already exists (to avoid overwriting secrets).
    """
    path = Path(output_path)
    if path.exists():
        raise ConfigError(
            f"'{output_path}' already exists. Remove it first or choose a different path."
        )
    path.write_text(TEMPLATE, encoding="utf-8")
