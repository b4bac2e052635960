import functools
import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, NamedTuple, Optional, Tuple

if TYPE_CHECKING:
    from release_tool.github_fetcher import Release

SEMVER_RE = re.compile(
    r"^v?(?P<major>[0-9]+)\.(?P<minor>[0-9]+)\.(?P<patch>[0-9]+)"
    r"(?:-(?P<prerelease>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)


class SemVer(NamedTuple):
    major: int
    minor: int
    patch: int
    prerelease: str = ""

    def sort_key(self) -> Tuple[int, int, int, bool, str]:
        # A prerelease comes before the final release
        return (self.major, self.minor, self.patch, self.prerelease == "", self.prerelease)

    def __str__(self) -> str:
        out = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            out += f"-{self.prerelease}"
        return out


def parse_semver(value: str) -> SemVer:
    """
    Parse a 'major.minor.patch[-prerelease]' version, with an optional 'v' prefix.

    Raises:
        ValueError: If the value is not a valid semver
    """
    match = SEMVER_RE.match(value.strip())
    if match is None:
        raise ValueError(f"{value} is not a valid semver")
    return SemVer(
        int(match.group("major")),
        int(match.group("minor")),
        int(match.group("patch")),
        match.group("prerelease") or "",
    )


def split_semver(value: str) -> Tuple[int, int, int]:
    version = parse_semver(value)
    return version.major, version.minor, version.patch


def previous_version(version: SemVer) -> SemVer:
    """
    Version the changelog of a release starts from.

    A new minor starts from the previous minor's first release, a patch from the
    previous patch.
    """
    if version.minor == 0 and version.patch == 0:
        raise ValueError(f"can't derive the version before {version}, new major versions are not supported")
    if version.patch == 0:
        return SemVer(version.major, version.minor - 1, 0)
    return SemVer(version.major, version.minor, version.patch - 1)


def _needs_v_prefix(version: SemVer) -> bool:
    if version.major >= 3:
        return True
    if version.major != 2:
        return False
    if version.minor >= 13:
        return True
    # Lines that switched to v-prefixed tags mid-way, with the first prefixed patch
    first_prefixed_patch = {12: 4, 11: 8, 10: 9, 7: 20}
    threshold = first_prefixed_patch.get(version.minor)
    return threshold is not None and version.patch >= threshold


def normalize_version_tag(tag: str, warn: bool = False) -> str:
    """
    Add the 'v' prefix to a tag when the project's tagging convention expects it.

    Tags that already have the prefix or don't parse are returned unchanged.

    Args:
        tag (str): Version tag, e.g. '2.11.8'
        warn (bool): Log a warning when the prefix is added (for user-provided tags)

    Returns:
        str: The tag as it exists in git
    """
    if tag.startswith("v"):
        return tag
    try:
        version = parse_semver(tag)
    except ValueError:
        return tag
    if not _needs_v_prefix(version):
        return tag
    if warn:
        logging.warning(f"auto-adding 'v' prefix to tag {tag} -> v{tag} (this version uses v-prefixed tags)")
    return f"v{tag}"


def add_months(day: date, months: int) -> date:
    """Add months to a date, a day missing from the target month overflows into the next one."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1) + timedelta(days=day.day - 1)


@dataclass
class VersionEntry:
    edition: str
    version: str
    release: str
    branch: str
    latest: bool = False
    release_date: str = ""
    end_of_life_date: str = ""
    label: str = ""
    lts: bool = False
    extended_months: int = 0

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "edition": self.edition,
            "version": self.version,
            "release": self.release,
        }
        if self.latest:
            out["latest"] = True
        if self.release_date:
            out["releaseDate"] = self.release_date
        if self.end_of_life_date:
            out["endOfLifeDate"] = self.end_of_life_date
        out["branch"] = self.branch
        if self.label:
            out["label"] = self.label
        if self.lts:
            out["lts"] = True
        if self.extended_months:
            out["extendedMonths"] = self.extended_months
        return out


def dev_entry(edition: str) -> VersionEntry:
    return VersionEntry(edition=edition, version="preview", release="dev", branch="master")


def build_version_entry(
    edition: str,
    release_name: str,
    lifetime_months: int,
    lts_lifetime_months: int,
    releases: List["Release"],
) -> VersionEntry:
    """
    Build the versions file entry for a single release line (e.g. 1.2.x).

    Args:
        edition (str): Product edition
        release_name (str): Release line, e.g. '1.2.x'
        lifetime_months (int): Support window of a regular release line
        lts_lifetime_months (int): Support window of an LTS release line
        releases (List[Release]): All releases of the line

    Returns:
        VersionEntry: The entry; dates stay empty until the line's first release is published
    """
    releases = sorted(releases, key=lambda r: r.semver().patch)
    first = releases[0]
    out = VersionEntry(
        edition=edition,
        version="",
        release=release_name,
        branch=first.branch(),
        latest=any(r.is_latest for r in releases),
    )
    if first.is_released():
        lifetime = lifetime_months
        if first.is_lts():
            out.lts = True
            lifetime = lts_lifetime_months
        extension = first.extension_months()
        if extension > 0:
            lifetime += extension
            out.extended_months = extension
        released_at = first.release_date()
        if released_at is None:
            raise ValueError(f"failed to extract release date for {first.name}")
        release_day = released_at.date()
        out.release_date = release_day.isoformat()
        out.end_of_life_date = add_months(release_day, lifetime).isoformat()

    # Latest published release, falls back to the last one
    latest_release = releases[-1]
    for r in releases:
        if r.is_released():
            latest_release = r
    out.version = latest_release.name[1:] if latest_release.name.startswith("v") else latest_release.name
    return out


def build_versions_file(
    releases: List["Release"],
    edition: str,
    min_version: str,
    lifetime_months: int = 12,
    lts_lifetime_months: int = 24,
    include_dev: bool = True,
) -> List[VersionEntry]:
    min_major, min_minor, _ = split_semver(min_version)
    by_line: Dict[str, List["Release"]] = {}
    for r in releases:
        major, minor, _ = split_semver(r.name)
        if (major, minor) < (min_major, min_minor):
            continue
        by_line.setdefault(f"{major}.{minor}.x", []).append(r)

    out = [
        build_version_entry(edition, line, lifetime_months, lts_lifetime_months, line_releases)
        for line, line_releases in by_line.items()
    ]
    out.sort(key=lambda e: parse_semver(e.version.replace("x", "0")).sort_key())
    if include_dev:
        out.append(dev_entry(edition))
    return out


def active_branches(entries: List[VersionEntry], today: Optional[date] = None) -> List[str]:
    """Branches still supported: no end of life yet or an end of life in the future."""
    today = today or date.today()
    return [
        e.branch
        for e in entries
        if not e.end_of_life_date or today < date.fromisoformat(e.end_of_life_date)
    ]


def _compare_for_changelog(a: "Release", b: "Release") -> int:
    if a.is_latest != b.is_latest:
        return -1 if a.is_latest else 1
    if a.created_at is None or b.created_at is None:
        return (a.created_at is None) - (b.created_at is None)
    if a.created_at.date() == b.created_at.date():
        # Released the same day, newest version first
        a_key, b_key = a.semver().sort_key(), b.semver().sort_key()
        return (a_key < b_key) - (a_key > b_key)
    return (a.created_at < b.created_at) - (a.created_at > b.created_at)


def sort_releases_for_changelog(releases: List["Release"]) -> List["Release"]:
    return sorted(releases, key=functools.cmp_to_key(_compare_for_changelog))
