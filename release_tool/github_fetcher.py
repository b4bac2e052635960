import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from release_tool.versions import SemVer, parse_semver

GH_COMMAND = "gh"

RELEASED_ON_RE = re.compile(r"^> Released on ([0-9]{4}/[0-9]{2}/[0-9]{2})")
EXTENSION_MONTHS_RE = re.compile(r"^> ExtensionMonths: *([0-9]+)\s*$")

RELEASES_QUERY = """
query($name: String!, $owner: String!) {
  repository(owner: $owner, name: $name) {
    releases(first: 100, orderBy: {field: CREATED_AT, direction: DESC}) {
      nodes {
        name
        createdAt
        publishedAt
        isDraft
        isPrerelease
        description
        databaseId
        isLatest
      }
    }
  }
}
"""

HISTORY_QUERY = """
query($name: String!, $owner: String!, $branch: String!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    object(expression: $branch) {
      ... on Commit {
        history(after: $cursor) {
          pageInfo {
            hasNextPage
            endCursor
          }
          nodes {
            oid
            message
            associatedPullRequests(first: 1) {
              nodes {
                author {
                  login
                }
                number
                title
                body
              }
            }
          }
        }
      }
    }
  }
}
"""

REF_QUERY = """
query($owner: String!, $name: String!, $ref: String!) {
  repository(name: $name, owner: $owner) {
    ref(qualifiedName: $ref) {
      target {
        commitUrl
        oid
      }
    }
  }
}
"""


class GitHubError(Exception):
    """Raised when the GitHub CLI or the GitHub API reports a failure."""


def split_repo(repo: str) -> Tuple[str, str]:
    parts = repo.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"{repo!r} is not a repository in 'owner/name' format")
    return parts[0], parts[1]


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ")
    return parsed.replace(tzinfo=timezone.utc)


@dataclass
class Release:
    name: str
    created_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    is_draft: bool = False
    is_prerelease: bool = False
    description: str = ""
    database_id: int = 0
    is_latest: bool = False

    @classmethod
    def from_node(cls, node: Dict[str, Any]) -> "Release":
        return cls(
            name=node.get("name") or "",
            created_at=_parse_datetime(node.get("createdAt")),
            published_at=_parse_datetime(node.get("publishedAt")),
            is_draft=bool(node.get("isDraft")),
            is_prerelease=bool(node.get("isPrerelease")),
            description=node.get("description") or "",
            database_id=node.get("databaseId") or 0,
            is_latest=bool(node.get("isLatest")),
        )

    def semver(self) -> SemVer:
        return parse_semver(self.name)

    def is_released(self) -> bool:
        """A release that is neither a draft nor a prerelease."""
        return not self.is_draft and not self.is_prerelease

    def branch(self) -> str:
        """Branch this release was first cut from."""
        version = self.semver()
        return f"release-{version.major}.{version.minor}"

    def release_date(self) -> Optional[datetime]:
        """
        Date this release went out.

        A leading '> Released on YYYY/MM/DD' line in the description overrides the
        publication date recorded by GitHub.
        """
        match = RELEASED_ON_RE.match(self.description)
        if match:
            return datetime.strptime(match.group(1), "%Y/%m/%d").replace(tzinfo=timezone.utc)
        return self.published_at

    def is_lts(self) -> bool:
        return any(line.strip() == "> LTS" for line in self.description.split("\n"))

    def extension_months(self) -> int:
        for line in self.description.split("\n"):
            match = EXTENSION_MONTHS_RE.match(line.strip())
            if match:
                return int(match.group(1))
        return 0


class GitHubClient:
    """
    Thin wrapper over the GitHub CLI.

    Works with both public and private repositories, provided the token (or the
    'gh auth login' session) has access.
    """

    def __init__(self, token: Optional[str] = None, timeout_seconds: int = 120):
        self.timeout_seconds = timeout_seconds
        self.env = dict(os.environ)
        if token:
            self.env["GH_TOKEN"] = token

    def _run(self, args: List[str], payload: Optional[Dict[str, Any]] = None) -> str:
        command = [GH_COMMAND] + args
        logging.debug(f"Running {' '.join(command[:3])}")
        try:
            result = subprocess.run(
                command,
                input=json.dumps(payload) if payload is not None else None,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout_seconds,
                env=self.env,
            )
        except FileNotFoundError as e:
            raise GitHubError(
                "GitHub CLI (gh) is not installed or not in PATH. Please install it: https://cli.github.com/"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise GitHubError(
                f"GitHub CLI exceeded {self.timeout_seconds} seconds timeout"
            ) from e
        except subprocess.CalledProcessError as e:
            raise GitHubError(f"Error calling GitHub CLI: {(e.stderr or '').strip()}") from e
        return result.stdout

    def check_available(self) -> None:
        self._run(["--version"])

    def graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        stdout = self._run(
            ["api", "graphql", "--input", "-"],
            payload={"query": query, "variables": variables},
        )
        out = json.loads(stdout)
        if out.get("errors"):
            messages = "; ".join(e.get("message", str(e)) for e in out["errors"])
            raise GitHubError(f"GraphQL query failed: {messages}")
        return out["data"]

    def rest(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        args = ["api", "--method", method, path]
        if payload is not None:
            args += ["--input", "-"]
        stdout = self._run(args, payload=payload)
        return json.loads(stdout) if stdout.strip() else {}

    def releases(self, repo: str) -> List[Release]:
        owner, name = split_repo(repo)
        data = self.graphql(RELEASES_QUERY, {"owner": owner, "name": name})
        return [Release.from_node(n) for n in data["repository"]["releases"]["nodes"]]

    def commit_by_ref(self, repo: str, tag: str) -> str:
        """
        Resolve a tag to the commit it points to.

        Returns:
            str: The commit sha
        """
        owner, name = split_repo(repo)
        data = self.graphql(
            REF_QUERY, {"owner": owner, "name": name, "ref": f"refs/tags/{tag}"}
        )
        ref = data["repository"]["ref"]
        if not ref:
            raise GitHubError(f"Tag {tag} not found in {repo}")
        # The oid doesn't always match the commit, the url does
        commit_url = ref["target"]["commitUrl"]
        return commit_url[commit_url.rfind("/") + 1 :]

    def history(self, repo: str, branch: str, commit_limit: str = "") -> List[Dict[str, Any]]:
        """
        Fetch the commit history of a branch, newest first.

        Args:
            repo (str): Repository in "owner/name" format
            branch (str): Branch (or any expression) to walk back from
            commit_limit (str): Stop before the commit whose sha starts with this value

        Returns:
            List[Dict[str, Any]]: GraphQL commit nodes
        """
        owner, name = split_repo(repo)
        out: List[Dict[str, Any]] = []
        cursor = None
        while True:
            data = self.graphql(
                HISTORY_QUERY,
                {"owner": owner, "name": name, "branch": branch, "cursor": cursor},
            )
            target = data["repository"]["object"]
            if target is None:
                raise GitHubError(f"Branch {branch} not found in {repo}")
            history = target["history"]
            for node in history["nodes"]:
                if commit_limit and node["oid"].startswith(commit_limit):
                    return out
                out.append(node)
            logging.debug(f"Fetched {len(out)} commits from {repo}@{branch}")
            if not history["pageInfo"]["hasNextPage"]:
                return out
            cursor = history["pageInfo"]["endCursor"]

    def upsert_release(
        self,
        repo: str,
        name: str,
        tag: str,
        modifier: Callable[[Dict[str, Any]], None],
    ) -> Dict[str, Any]:
        """
        Create a draft release or update the existing release with the same name.

        Args:
            repo (str): Repository in "owner/name" format
            name (str): Release name to look up
            tag (str): Tag for a newly created release
            modifier (Callable): Mutates the release payload before it is sent, may raise
                                 to abort

        Returns:
            Dict[str, Any]: The release as returned by GitHub
        """
        existing = next((r for r in self.releases(repo) if r.name == name), None)
        if existing is None:
            payload: Dict[str, Any] = {"name": name, "tag_name": tag, "draft": True}
            modifier(payload)
            logging.info(f"Creating draft release {name} in {repo}")
            return self.rest("POST", f"/repos/{repo}/releases", payload)

        path = f"/repos/{repo}/releases/{existing.database_id}"
        payload = self.rest("GET", path)
        modifier(payload)
        logging.info(f"Updating release {name} in {repo}")
        return self.rest(
            "PATCH",
            path,
            {k: payload[k] for k in ("name", "body", "tag_name", "draft") if k in payload},
        )
