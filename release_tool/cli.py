import argparse
import logging
import sys
import traceback
from typing import Any, Dict, List, Optional

from release_tool.changelog import Changelog, CommitRecord, aggregate, to_json, to_markdown
from release_tool.config import BINARY_URL_TEMPLATE, Config, default_repo, load_environment, resolve_token, split_list
from release_tool.github_fetcher import GitHubClient
from release_tool.output import (
    GITHUB_MAX_BODY_SIZE,
    body_preview,
    print_json_output,
    release_body,
    render_changelog_md,
    render_versions_file,
    write_output,
)
from release_tool.release_checks import check_binaries, check_docker_images, find_helm_chart, strip_v
from release_tool.versions import (
    active_branches,
    build_versions_file,
    normalize_version_tag,
    parse_semver,
    previous_version,
)

FORMAT_MARKDOWN = "md"
FORMAT_JSON = "json"


class ReleaseError(Exception):
    """Raised when release notes can't be published."""


def get_changelog(client: GitHubClient, repo: str, branch: str, tag: str) -> Changelog:
    """
    Build the changelog of everything merged on a branch since a tag.

    Args:
        client (GitHubClient): GitHub client
        repo (str): Repository in "owner/name" format
        branch (str): Branch to walk back from
        tag (str): Tag the changelog starts after (must be on the same branch)

    Returns:
        Changelog: The rolled up changelog
    """
    commit = client.commit_by_ref(repo, tag)
    history = client.history(repo, branch, commit)
    records = []
    for node in history:
        record = CommitRecord.from_commit_node(node)
        if record is not None:
            records.append(record)
    logging.info(f"Found {len(records)} commits with a pull request out of {len(history)} since {tag}")
    return aggregate(repo, records)


def cmd_version_changelog(config: Config, client: GitHubClient) -> None:
    if not config.from_tag:
        raise ValueError("You must set --from-tag")
    changelog = get_changelog(client, config.repo, config.branch, config.from_tag)
    if config.format == FORMAT_JSON:
        write_output(to_json(changelog) + "\n", config.output)
    else:
        write_output(to_markdown(changelog), config.output)


def cmd_changelog_md(config: Config, client: GitHubClient) -> None:
    write_output(render_changelog_md(client.releases(config.repo)), config.output)


def cmd_version_file(config: Config, client: GitHubClient) -> None:
    entries = build_versions_file(
        client.releases(config.repo),
        edition=config.edition,
        min_version=config.min_version,
        lifetime_months=config.lifetime_months,
        lts_lifetime_months=config.lts_lifetime_months,
        include_dev=config.include_dev,
    )
    if config.active_branches:
        print_json_output(active_branches(entries), indent=None)
        return
    write_output(render_versions_file(entries), config.output)


def cmd_release_changelog(config: Config, client: GitHubClient) -> None:
    version = parse_semver(config.release)
    branch = f"release-{version.major}.{version.minor}"
    # Auto-derived, no need to warn about the prefix
    prev_tag = normalize_version_tag(str(previous_version(version)))
    logging.info(f"getting changelog from {prev_tag} on repo {config.repo} and branch {branch}")
    changelog = get_changelog(client, config.repo, branch, prev_tag)

    if config.dry_run:
        sys.stdout.write(body_preview(release_body(changelog, version.patch)))
        return
    if not changelog:
        print("no changelog")
        return

    release_tag = normalize_version_tag(config.release, warn=True)
    # Release names never have the v prefix
    release_name = strip_v(release_tag)

    def set_body(release: Dict[str, Any]) -> None:
        if not release.get("draft"):
            raise ReleaseError(
                f"release {release_name} has already published release notes, "
                "updating release notes of released versions is not supported"
            )
        body = release_body(changelog, version.patch, release.get("body"))
        if len(body) > GITHUB_MAX_BODY_SIZE:
            raise ReleaseError(
                f"release body exceeds GitHub limit: {len(body)} characters (max {GITHUB_MAX_BODY_SIZE}). "
                "Use --dry-run to preview the body and consider manually truncating"
            )
        release["name"] = release_name
        release["body"] = body

    client.upsert_release(config.repo, release_name, release_tag, set_body)
    logging.info(f"Release {release_name} updated with {len(changelog)} changelog entries")


def cmd_helm_chart(config: Config, client: GitHubClient) -> None:
    if not config.charts_repo:
        raise ValueError("must set --charts-repo")
    chart = find_helm_chart(client.releases(config.charts_repo), config.repo, config.release)
    print(f"Found helm chart: {chart.name}")


def cmd_binaries(config: Config, client: Optional[GitHubClient] = None) -> None:
    for url in check_binaries(
        config.repo, config.release, config.binaries, config.url_template, config.timeout_seconds
    ):
        print(f"Found: {url}")


def cmd_docker(config: Config, client: Optional[GitHubClient] = None) -> None:
    for tag in check_docker_images(
        config.docker_repo, config.images, config.release, config.timeout_seconds
    ):
        print(f"Got image: {tag}")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo",
        type=str,
        default=default_repo(),
        help="The repository to query (defaults to DEFAULT_REPO)",
    )
    common.add_argument(
        "--timeout",
        type=int,
        default=120,
        help="Timeout in seconds for API calls",
    )
    common.add_argument(
        "--output",
        type=str,
        help="Write the result to this file instead of stdout",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    release_common = argparse.ArgumentParser(add_help=False)
    release_common.add_argument(
        "--release", type=str, required=True, help="The name of the release to publish"
    )

    parser = argparse.ArgumentParser(
        prog="release-tool",
        description="Generate changelogs, release notes and version files from GitHub.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    version_changelog = commands.add_parser(
        "version-changelog",
        parents=[common],
        help="Generate the changelog for a specific release using the GitHub GraphQL API",
        description=(
            "Get all commits on --branch after --from-tag and their associated PRs. A PR is listed "
            "using the '> Changelog:' line of its description if there is one ('skip' drops it), "
            "otherwise its title unless the commit starts with ci, test, refactor, build, docs... "
            "PRs with the same changelog entry are grouped together."
        ),
    )
    version_changelog.add_argument("--branch", default="master", help="The branch to look for the start on")
    version_changelog.add_argument(
        "--from-tag", default="", help="Only show commits after this tag (must be on the same branch)"
    )
    version_changelog.add_argument(
        "--format",
        choices=[FORMAT_MARKDOWN, FORMAT_JSON],
        default=FORMAT_MARKDOWN,
        help="The output format",
    )
    version_changelog.set_defaults(handler=cmd_version_changelog)

    changelog_md = commands.add_parser(
        "changelog.md",
        parents=[common],
        help="Recreate the changelog.md using the changelog in each GitHub release",
    )
    changelog_md.set_defaults(handler=cmd_changelog_md)

    version_file = commands.add_parser(
        "version-file",
        parents=[common],
        help="Recreate the versions.yaml using GitHub releases",
    )
    version_file.add_argument("--edition", default="kuma", help="The edition of the product")
    version_file.add_argument(
        "--lifetime-months", type=int, default=12, help="The number of months a version is supported for"
    )
    version_file.add_argument(
        "--lts-lifetime-months", type=int, default=24, help="The number of months an LTS version is supported for"
    )
    version_file.add_argument(
        "--min-version", default="1.2.0", help="The minimum version to build a version file on"
    )
    version_file.add_argument(
        "--no-include-dev", dest="include_dev", action="store_false", help="Don't add the dev entry"
    )
    version_file.add_argument(
        "--active-branches", action="store_true", help="Only output a JSON list of the branches not EOL"
    )
    version_file.set_defaults(handler=cmd_version_file)

    release = commands.add_parser("release", help="Release notes and artifact checks")
    release_commands = release.add_subparsers(dest="release_command", required=True)

    release_changelog = release_commands.add_parser(
        "changelog",
        parents=[common, release_common],
        help="Create or update a release in GitHub with the generated changelog",
    )
    release_changelog.add_argument(
        "--dry-run", action="store_true", help="Preview the release body without updating GitHub"
    )
    release_changelog.set_defaults(handler=cmd_release_changelog)

    helm_chart = release_commands.add_parser(
        "helm-chart",
        parents=[common, release_common],
        help="Check the helm chart of the release was published",
    )
    helm_chart.add_argument("--charts-repo", default="", help="The repository of the helm charts")
    helm_chart.set_defaults(handler=cmd_helm_chart)

    binaries = release_commands.add_parser(
        "binaries",
        parents=[common, release_common],
        help="Check all binaries are present in the right place",
    )
    binaries.add_argument(
        "--binaries",
        type=split_list,
        default=[],
        help="A comma separated list of targets (e.g. centos-amd64,darwin-arm64)",
    )
    binaries.add_argument(
        "--url-template",
        default=BINARY_URL_TEMPLATE,
        help="Binary URL with {org}, {repo}, {binary} and {release} placeholders",
    )
    binaries.set_defaults(handler=cmd_binaries, needs_github=False)

    docker = release_commands.add_parser(
        "docker",
        parents=[common, release_common],
        help="Check all images",
    )
    docker.add_argument("--docker-repo", default="", help="The name of the docker repo")
    docker.add_argument(
        "--images",
        type=split_list,
        default=[],
        help="A comma separated list of images (e.g. kumactl,kuma-cp)",
    )
    docker.set_defaults(handler=cmd_docker, needs_github=False)
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    if not args.repo:
        raise ValueError("Must set a repo!")
    values = {
        name: getattr(args, name)
        for name in (
            "branch",
            "from_tag",
            "format",
            "edition",
            "lifetime_months",
            "lts_lifetime_months",
            "min_version",
            "include_dev",
            "active_branches",
            "release",
            "dry_run",
            "charts_repo",
            "binaries",
            "url_template",
            "docker_repo",
            "images",
            "output",
        )
        if hasattr(args, name)
    }
    return Config(repo=args.repo, timeout_seconds=args.timeout, token=resolve_token(), **values)


def main(argv: Optional[List[str]] = None, client: Optional[GitHubClient] = None) -> int:
    """
    Parse the command line and run the selected command.

    Usage Examples:
    --------------
    1. Changelog of everything merged on master since a tag:
       release-tool version-changelog --repo kumahq/kuma --from-tag 2.8.0

    2. Same as JSON:
       release-tool version-changelog --from-tag 2.8.0 --format json

    3. Publish the changelog in the draft release of 2.8.1 (preview first):
       release-tool release changelog --release 2.8.1 --dry-run
       release-tool release changelog --release 2.8.1

    4. Versions file, or only the supported branches:
       release-tool version-file --edition kuma --min-version 2.0.0
       release-tool version-file --active-branches

    5. Artifact checks:
       release-tool release binaries --release 2.8.1 --binaries ubuntu-amd64,darwin-arm64
       release-tool release docker --release 2.8.1 --docker-repo kumahq --images kuma-cp,kumactl

    Returns:
        int: Process exit code
    """
    load_environment()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    config = config_from_args(args)
    if client is None and getattr(args, "needs_github", True):
        client = GitHubClient(token=config.token, timeout_seconds=config.timeout_seconds)
        client.check_available()
    args.handler(config, client)
    return 0


def run() -> None:
    try:
        sys.exit(main())
    except Exception as e:
        logging.debug(traceback.format_exc())
        logging.error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
