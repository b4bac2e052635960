import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

FALLBACK_REPO = "kumahq/kuma"
TOKEN_ENV_VARS = ("GITHUB_TOKEN", "GITHUB_API_TOKEN", "GH_TOKEN")

BINARY_URL_TEMPLATE = (
    "https://packages.konghq.com/public/{repo}-binaries-release/raw/names/{repo}-{binary}"
    "/versions/{release}/{repo}-{release}-{binary}.tar.gz"
)


@dataclass
class Config:
    """Settings of a single release-tool invocation."""

    repo: str
    timeout_seconds: int = 120
    token: Optional[str] = None
    output: Optional[str] = None

    # version-changelog
    branch: str = "master"
    from_tag: str = ""
    format: str = "md"

    # version-file
    edition: str = "kuma"
    lifetime_months: int = 12
    lts_lifetime_months: int = 24
    min_version: str = "1.2.0"
    include_dev: bool = True
    active_branches: bool = False

    # release
    release: str = ""
    dry_run: bool = False
    charts_repo: str = ""
    binaries: List[str] = field(default_factory=list)
    url_template: str = BINARY_URL_TEMPLATE
    docker_repo: str = ""
    images: List[str] = field(default_factory=list)


def load_environment() -> None:
    """Load a local .env file, existing environment variables win."""
    load_dotenv()


def default_repo() -> str:
    return os.getenv("DEFAULT_REPO") or FALLBACK_REPO


def resolve_token() -> Optional[str]:
    """
    Find a GitHub token in the environment.

    GITHUB_TOKEN is preferred over GITHUB_API_TOKEN over GH_TOKEN. When none is set
    the GitHub CLI falls back to its own 'gh auth login' session.
    """
    for var in TOKEN_ENV_VARS:
        token = os.getenv(var)
        if token:
            return token
    return None


def split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]
