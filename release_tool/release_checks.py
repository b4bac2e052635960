import logging
from typing import List

import requests

from release_tool.github_fetcher import Release, split_repo

DOCKER_HUB_TAG_URL = "https://hub.docker.com/v2/repositories/{docker_repo}/{image}/tags/{release}"


class ReleaseCheckError(Exception):
    """Raised when one or more release artifacts are missing."""

    def __init__(self, failures: List[str]):
        self.failures = failures
        super().__init__("\n".join(failures))


def strip_v(release: str) -> str:
    return release[1:] if release.startswith("v") else release


def find_helm_chart(releases: List[Release], repo: str, release: str) -> Release:
    """
    Find the chart release matching a product release.

    Git tags may carry a 'v' prefix (v2.11.8) but charts never do (kuma-2.11.8).
    """
    _, name = split_repo(repo)
    expected = f"{name}-{strip_v(release)}"
    for r in releases:
        if r.name == expected:
            return r
    raise ReleaseCheckError([f"couldn't find matching helm charts: {expected}"])


def check_binaries(
    repo: str, release: str, binaries: List[str], url_template: str, timeout_seconds: int = 120
) -> List[str]:
    """
    Check that every binary was uploaded.

    Args:
        repo (str): Repository in "owner/name" format
        release (str): Release version
        binaries (List[str]): Binary targets, e.g. ['centos-amd64', 'darwin-arm64']
        url_template (str): Download URL with {org}, {repo}, {binary} and {release} placeholders

    Returns:
        List[str]: URLs that were found

    Raises:
        ReleaseCheckError: Listing every binary that is missing or unreachable
    """
    if not binaries:
        raise ValueError("need to specify at least one binary")
    org, name = split_repo(repo)
    version = strip_v(release)
    found, failures = [], []
    for binary in binaries:
        url = url_template.format(org=org, repo=name, binary=binary, release=version)
        try:
            # Only the status matters, don't download the archive
            with requests.get(url, stream=True, timeout=timeout_seconds) as response:
                status_code = response.status_code
        except requests.RequestException as e:
            failures.append(f"couldn't get {url}: {e}")
            continue
        if status_code != 200:
            failures.append(f"couldn't get {url}: {status_code}")
            continue
        logging.info(f"Found: {url}")
        found.append(url)
    if failures:
        raise ReleaseCheckError(failures)
    return found


def check_docker_images(
    docker_repo: str, images: List[str], release: str, timeout_seconds: int = 120
) -> List[str]:
    """Check that every image has a tag for the release on Docker Hub."""
    if not images:
        raise ValueError("need to specify some docker images")
    if not docker_repo:
        raise ValueError("need to specify a docker repository")
    version = strip_v(release)
    found, failures = [], []
    for image in images:
        tag = f"{docker_repo}/{image}:{version}"
        url = DOCKER_HUB_TAG_URL.format(docker_repo=docker_repo, image=image, release=version)
        try:
            response = requests.head(url, timeout=timeout_seconds)
        except requests.RequestException as e:
            failures.append(f"failed with image: {tag} {e}")
            continue
        if response.status_code != 200:
            failures.append(f"failed with image: {tag} status: {response.status_code}")
            continue
        logging.info(f"Got image: {tag}")
        found.append(tag)
    if failures:
        raise ReleaseCheckError(failures)
    return found
