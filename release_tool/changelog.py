import json
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

CHANGELOG_DIRECTIVE = "> Changelog: "

# Commit prefixes that never make it to the changelog unless the PR says so
IGNORED_PREFIXES = ("build", "ci", "test", "refactor", "fix(ci)", "fix(test)", "docs")

# titles look like: chore(deps): bump github.com/lib/pq from 1.10.6 to 1.10.7
DEPENDENCY_BUMP_RE = re.compile(r"^chore\(deps\): [bB]ump ([^ ]+) from ([^ ]+) to ([^ ]+)")


@dataclass(frozen=True)
class CommitRecord:
    author: str
    pr_number: int
    pr_title: str = ""
    pr_body: str = ""
    commit_message: str = ""
    sha: str = ""
    canonical_key: str = ""
    dep_start: Optional[str] = None
    dep_end: Optional[str] = None

    @classmethod
    def from_commit_node(cls, node: Dict[str, Any]) -> Optional["CommitRecord"]:
        """
        Build a record from a GraphQL history node.

        Returns None when the commit has no associated pull request.
        """
        prs = (node.get("associatedPullRequests") or {}).get("nodes") or []
        if not prs:
            return None
        pr = prs[0]
        author = (pr.get("author") or {}).get("login") or "ghost"
        return cls(
            author=author,
            pr_number=pr["number"],
            pr_title=pr.get("title") or "",
            pr_body=pr.get("body") or "",
            commit_message=node.get("message") or "",
            sha=node.get("oid") or "",
        )


@dataclass(frozen=True)
class ChangelogItem:
    desc: str
    authors: Tuple[str, ...] = ()
    pull_requests: Tuple[int, ...] = ()
    repo: str = ""

    def __post_init__(self):
        # Lists are accepted, tuples are stored
        object.__setattr__(self, "authors", tuple(self.authors))
        object.__setattr__(self, "pull_requests", tuple(self.pull_requests))

    def __str__(self) -> str:
        pr_links = " ".join(
            f"[#{n}](https://github.com/{self.repo}/pull/{n})" for n in self.pull_requests
        )
        # The list may come from somewhere other than aggregate()
        authors = ",".join(sorted(set(self.authors)))
        return f"{self.desc} {pr_links} {authors}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "desc": self.desc,
            "authors": list(self.authors),
            "pull_requests": list(self.pull_requests),
        }


Changelog = List[ChangelogItem]


def changelog_directive(body: str) -> str:
    """Return the value of the last '> Changelog: ' line of a PR body, or ''."""
    directive = ""
    for line in body.split("\n"):
        if line.startswith(CHANGELOG_DIRECTIVE):
            directive = line[len(CHANGELOG_DIRECTIVE) :].strip()
    return directive


def normalize(record: CommitRecord) -> Optional[CommitRecord]:
    """
    Decide whether a commit contributes to the changelog.

    Args:
        record (CommitRecord): The commit and its pull request

    Returns:
        Optional[CommitRecord]: A copy carrying canonical_key (and dep_start/dep_end for
                                dependency bumps), or None if the commit is excluded
    """
    directive = changelog_directive(record.pr_body)
    if directive == "skip":
        return None
    if directive == "":
        message = record.commit_message
        if message.startswith(IGNORED_PREFIXES):
            return None
        # Only chore(deps) chores are worth listing
        if message.startswith("chore") and not message.startswith("chore(deps)"):
            return None
        key = record.pr_title
    else:
        key = directive

    match = DEPENDENCY_BUMP_RE.match(key)
    if match is None:
        return replace(record, canonical_key=key, dep_start=None, dep_end=None)
    dependency, dep_start, dep_end = match.groups()
    return replace(
        record,
        canonical_key=f"chore(deps): bump {dependency}",
        dep_start=dep_start,
        dep_end=dep_end,
    )


def _rollup(repo: str, key: str, records: List[CommitRecord]) -> ChangelogItem:
    seen_prs = set()
    seen_authors = set()
    prs: List[int] = []
    authors: List[str] = []
    min_version: Optional[str] = None
    max_version: Optional[str] = None
    for record in sorted(records, key=lambda r: r.pr_number):
        # Old history wasn't squashed, several commits can share a PR
        if record.pr_number in seen_prs:
            continue
        if not prs:
            min_version = record.dep_start
        seen_prs.add(record.pr_number)
        prs.append(record.pr_number)
        max_version = record.dep_end
        if record.author not in seen_authors:
            seen_authors.add(record.author)
            authors.append(f"@{record.author}")

    desc = key
    if min_version and max_version:
        desc = f"{key} from {min_version} to {max_version}"
    return ChangelogItem(desc=desc, authors=tuple(sorted(authors)), pull_requests=tuple(prs), repo=repo)


def aggregate(repo: str, records: Iterable[CommitRecord]) -> Changelog:
    """
    Roll up commits into changelog items.

    Commits are grouped by their changelog entry, dependency bumps of the same
    dependency are merged into a single "from X to Y" line and pull requests and
    authors are deduplicated.

    Args:
        repo (str): Repository in "owner/name" format, used for PR links
        records (Iterable[CommitRecord]): Commits with their associated PR

    Returns:
        Changelog: Items sorted by description
    """
    buckets: Dict[str, List[CommitRecord]] = {}
    for record in records:
        normalized = normalize(record)
        if normalized is None:
            continue
        buckets.setdefault(normalized.canonical_key, []).append(normalized)

    items = [_rollup(repo, key, bucket) for key, bucket in buckets.items()]
    items.sort(key=lambda item: item.desc)
    return items


def to_markdown(changelog: Changelog) -> str:
    return "".join(f"* {item}\n" for item in changelog)


def to_json(changelog: Changelog) -> str:
    return json.dumps([item.to_dict() for item in changelog], indent=2)
