import json
import logging
import os
import sys
from typing import Any, List, Optional

import yaml

from release_tool.changelog import Changelog, to_markdown
from release_tool.github_fetcher import Release
from release_tool.versions import VersionEntry, sort_releases_for_changelog

# Maximum size GitHub accepts for a release body
GITHUB_MAX_BODY_SIZE = 125000

CHANGELOG_SECTION = "## Changelog"

CHANGELOG_MD_HEADER = (
    "# Changelog\n"
    "<!-- Autogenerated with release-tool changelog.md -->\n"
)

MINOR_RELEASE_HEADER = """We are excited to announce the latest release !
TODO short description of the biggest features

## Notable Changes

TODO summary of some simple stuff.

## Changelog

"""

PATCH_RELEASE_HEADER = """This is a patch release that every user should upgrade to.

## Changelog

"""


def write_output(content: str, output_path: Optional[str] = None) -> None:
    """
    Write the result to a file, or to stdout when no path is given.
    """
    if not output_path:
        sys.stdout.write(content)
        return
    output_dir = os.path.dirname(output_path)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(content)
    logging.info(f"Output written to: {output_path}")


def print_json_output(result: Any, indent: Optional[int] = 2) -> None:
    """
    Print the result as a JSON string (for GitHub Actions or other automation).
    """
    print(json.dumps(result, indent=indent))


def render_versions_file(entries: List[VersionEntry]) -> str:
    return yaml.safe_dump(
        [e.to_dict() for e in entries], sort_keys=False, default_flow_style=False
    )


def render_changelog_md(releases: List[Release]) -> str:
    """
    Rebuild CHANGELOG.md out of the '## Changelog' section of every published release.
    """
    parts = [CHANGELOG_MD_HEADER]
    for release in sort_releases_for_changelog(releases):
        if not release.is_released():
            continue
        if CHANGELOG_SECTION not in release.description:
            continue
        changelog = release.description.split(CHANGELOG_SECTION, 1)[1]
        released_on = release.created_at.strftime("%Y/%m/%d") if release.created_at else ""
        parts.append(f"\n## {release.name}\n> Released on {released_on}{changelog}\n")
    return "".join(parts)


def release_header(patch: int, existing_body: Optional[str] = None) -> str:
    """
    Header of a release body, everything up to and including '## Changelog'.

    An existing body keeps whatever was written above its changelog.
    """
    if existing_body is not None:
        return existing_body.split(CHANGELOG_SECTION, 1)[0] + CHANGELOG_SECTION + "\n\n"
    if patch != 0:
        return PATCH_RELEASE_HEADER
    return MINOR_RELEASE_HEADER


def release_body(changelog: Changelog, patch: int, existing_body: Optional[str] = None) -> str:
    return release_header(patch, existing_body) + to_markdown(changelog)


def body_preview(body: str) -> str:
    size = len(body)
    lines = [
        f"\n--- Release Body Preview ({size} characters) ---\n",
        body,
        "--- End Preview ---\n\n",
    ]
    if size > GITHUB_MAX_BODY_SIZE:
        lines.append(
            f"WARNING: Body exceeds GitHub limit of {GITHUB_MAX_BODY_SIZE} characters"
            f" by {size - GITHUB_MAX_BODY_SIZE} characters\n"
        )
    else:
        lines.append(
            f"Body size OK: {size}/{GITHUB_MAX_BODY_SIZE} characters"
            f" ({size / GITHUB_MAX_BODY_SIZE * 100:.1f}% of limit)\n"
        )
    return "".join(lines)
