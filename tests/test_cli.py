import json
import sys
from datetime import datetime, timezone

import pytest

from release_tool import cli, release_checks
from release_tool.cli import ReleaseError, main
from release_tool.github_fetcher import Release


def commit_node(oid, number, title, message="", body="", author="a"):
    return {
        "oid": oid,
        "message": message,
        "associatedPullRequests": {
            "nodes": [{"author": {"login": author}, "number": number, "title": title, "body": body}]
        },
    }


class FakeClient:
    def __init__(self, history=(), releases=(), existing_release=None):
        self._history = list(history)
        self._releases = list(releases)
        self.existing_release = existing_release
        self.calls = []
        self.upserted = None

    def check_available(self):
        pass

    def commit_by_ref(self, repo, tag):
        self.calls.append(("commit_by_ref", repo, tag))
        return "c0ffee"

    def history(self, repo, branch, commit_limit=""):
        self.calls.append(("history", repo, branch, commit_limit))
        return self._history

    def releases(self, repo):
        self.calls.append(("releases", repo))
        return self._releases

    def upsert_release(self, repo, name, tag, modifier):
        self.calls.append(("upsert_release", repo, name, tag))
        payload = dict(self.existing_release or {"name": name, "tag_name": tag, "draft": True})
        modifier(payload)
        self.upserted = payload
        return payload


HISTORY = [
    commit_node("c5", 5, "chore(deps): bump foo from 1.1 to 1.2", message="chore(deps): bump foo from 1.1 to 1.2"),
    commit_node("c4", 4, "ci: faster", message="ci: faster"),
    commit_node("c3", 3, "feat: add retries", body="> Changelog: feat: add retries to the gateway"),
    commit_node("c2", 2, "chore(deps): Bump foo from 1.0 to 1.1", author="b"),
    {"oid": "c1", "message": "direct push", "associatedPullRequests": {"nodes": []}},
]


def test_version_changelog_markdown(capsys):
    client = FakeClient(history=HISTORY)
    assert main(["version-changelog", "--repo", "kumahq/kuma", "--from-tag", "2.8.0"], client=client) == 0
    assert client.calls == [
        ("commit_by_ref", "kumahq/kuma", "2.8.0"),
        ("history", "kumahq/kuma", "master", "c0ffee"),
    ]
    assert capsys.readouterr().out == (
        "* chore(deps): bump foo from 1.0 to 1.2 [#2](https://github.com/kumahq/kuma/pull/2)"
        " [#5](https://github.com/kumahq/kuma/pull/5) @a,@b\n"
        "* feat: add retries to the gateway [#3](https://github.com/kumahq/kuma/pull/3) @a\n"
    )


def test_version_changelog_json(capsys):
    client = FakeClient(history=HISTORY)
    main(
        ["version-changelog", "--repo", "kumahq/kuma", "--from-tag", "2.8.0", "--branch", "release-2.8", "--format", "json"],
        client=client,
    )
    assert client.calls[1][2] == "release-2.8"
    assert json.loads(capsys.readouterr().out) == [
        {"desc": "chore(deps): bump foo from 1.0 to 1.2", "authors": ["@a", "@b"], "pull_requests": [2, 5]},
        {"desc": "feat: add retries to the gateway", "authors": ["@a"], "pull_requests": [3]},
    ]


def test_version_changelog_to_file(tmp_path):
    path = tmp_path / "changelog.md"
    main(["version-changelog", "--repo", "kumahq/kuma", "--from-tag", "2.8.0", "--output", str(path)], client=FakeClient())
    assert path.read_text(encoding="utf-8") == ""


def test_version_changelog_needs_tag():
    with pytest.raises(ValueError, match="--from-tag"):
        main(["version-changelog", "--repo", "kumahq/kuma"], client=FakeClient())


def published(name, day, **kwargs):
    when = datetime(2021, 1, day, tzinfo=timezone.utc)
    return Release(name, created_at=when, published_at=when, **kwargs)


def test_version_file(capsys):
    client = FakeClient(releases=[published("2.0.1", 20, is_latest=True), published("2.0.0", 10), published("1.9.0", 1)])
    main(["version-file", "--repo", "kumahq/kuma", "--min-version", "2.0.0", "--edition", "mesh"], client=client)
    out = capsys.readouterr().out
    assert "- edition: mesh\n  version: 2.0.1\n  release: 2.0.x\n" in out
    assert "1.9" not in out
    assert "release: dev" in out


def test_version_file_active_branches(capsys):
    client = FakeClient(releases=[published("2.0.0", 10), published("1.9.0", 1)])
    main(["version-file", "--repo", "kumahq/kuma", "--lifetime-months", "1200", "--active-branches"], client=client)
    assert json.loads(capsys.readouterr().out) == ["release-1.9", "release-2.0", "master"]


def test_changelog_md(capsys):
    client = FakeClient(releases=[published("2.0.0", 10, description="## Changelog\n* a\n")])
    main(["changelog.md", "--repo", "kumahq/kuma"], client=client)
    assert capsys.readouterr().out.endswith("\n## 2.0.0\n> Released on 2021/01/10\n* a\n\n")


def test_release_changelog_patch():
    client = FakeClient(history=HISTORY)
    main(["release", "changelog", "--repo", "kumahq/kuma", "--release", "2.8.1"], client=client)
    assert client.calls[:2] == [
        ("commit_by_ref", "kumahq/kuma", "2.8.0"),
        ("history", "kumahq/kuma", "release-2.8", "c0ffee"),
    ]
    assert client.calls[2] == ("upsert_release", "kumahq/kuma", "2.8.1", "2.8.1")
    assert client.upserted["name"] == "2.8.1"
    assert client.upserted["body"].startswith("This is a patch release that every user should upgrade to.\n")
    assert "* feat: add retries to the gateway" in client.upserted["body"]


def test_release_changelog_new_minor_with_v_prefix():
    client = FakeClient(history=HISTORY)
    main(["release", "changelog", "--repo", "kumahq/kuma", "--release", "2.13.0"], client=client)
    assert client.calls[0] == ("commit_by_ref", "kumahq/kuma", "2.12.0")
    assert client.calls[1][2] == "release-2.13"
    assert client.calls[2] == ("upsert_release", "kumahq/kuma", "2.13.0", "v2.13.0")
    assert client.upserted["body"].startswith("We are excited to announce the latest release !\n")


def test_release_changelog_keeps_existing_intro():
    existing = {"name": "v2.8.1", "tag_name": "2.8.1", "draft": True, "body": "Our intro\n## Changelog\n\n* old\n"}
    client = FakeClient(history=HISTORY, existing_release=existing)
    main(["release", "changelog", "--repo", "kumahq/kuma", "--release", "v2.8.1"], client=client)
    assert client.upserted["name"] == "2.8.1"
    assert client.upserted["body"].startswith("Our intro\n## Changelog\n\n* chore(deps)")
    assert "* old" not in client.upserted["body"]


def test_release_changelog_refuses_published_release():
    client = FakeClient(history=HISTORY, existing_release={"name": "2.8.1", "draft": False, "body": "done"})
    with pytest.raises(ReleaseError, match="already published"):
        main(["release", "changelog", "--repo", "kumahq/kuma", "--release", "2.8.1"], client=client)


def test_release_changelog_dry_run(capsys):
    client = FakeClient(history=HISTORY)
    main(["release", "changelog", "--repo", "kumahq/kuma", "--release", "2.8.1", "--dry-run"], client=client)
    out = capsys.readouterr().out
    assert "--- Release Body Preview" in out
    assert "* feat: add retries to the gateway" in out
    assert "Body size OK" in out
    assert client.upserted is None


def test_release_changelog_empty(capsys):
    client = FakeClient()
    main(["release", "changelog", "--repo", "kumahq/kuma", "--release", "2.8.1"], client=client)
    assert capsys.readouterr().out == "no changelog\n"
    assert client.upserted is None


def test_release_needs_release_flag():
    with pytest.raises(SystemExit) as e:
        main(["release", "changelog", "--repo", "kumahq/kuma"], client=FakeClient())
    assert e.value.code == 2


def test_helm_chart(capsys):
    client = FakeClient(releases=[Release("kuma-2.11.8")])
    main(
        ["release", "helm-chart", "--repo", "kumahq/kuma", "--release", "v2.11.8", "--charts-repo", "kumahq/charts"],
        client=client,
    )
    assert client.calls == [("releases", "kumahq/charts")]
    assert "kuma-2.11.8" in capsys.readouterr().out


def test_helm_chart_needs_charts_repo():
    with pytest.raises(ValueError, match="--charts-repo"):
        main(["release", "helm-chart", "--repo", "kumahq/kuma", "--release", "2.11.8"], client=FakeClient())


def test_binaries_without_github(monkeypatch, capsys):
    class Ok:
        status_code = 200

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            pass

    monkeypatch.setattr(release_checks.requests, "get", lambda url, stream=False, timeout=None: Ok())
    main(
        [
            "release",
            "binaries",
            "--repo",
            "kumahq/kuma",
            "--release",
            "2.11.8",
            "--binaries",
            "ubuntu-amd64, darwin-arm64",
            "--url-template",
            "https://example.com/{repo}/{release}/{binary}",
        ]
    )
    assert capsys.readouterr().out == (
        "Found: https://example.com/kuma/2.11.8/ubuntu-amd64\nFound: https://example.com/kuma/2.11.8/darwin-arm64\n"
    )


def test_docker_without_github(monkeypatch, capsys):
    class Ok:
        status_code = 200

    monkeypatch.setattr(release_checks.requests, "head", lambda url, timeout=None: Ok())
    main(["release", "docker", "--repo", "kumahq/kuma", "--release", "2.11.8", "--docker-repo", "kumahq", "--images", "kuma-cp"])
    assert capsys.readouterr().out == "Got image: kumahq/kuma-cp:2.11.8\n"


def test_run_exits_on_error(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["release-tool", "version-changelog", "--repo", "", "--from-tag", "1.0.0"])
    with pytest.raises(SystemExit) as e:
        cli.run()
    assert e.value.code == 1


def test_token_from_environment(monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setenv("GITHUB_API_TOKEN", "api-token")
    monkeypatch.setenv("GH_TOKEN", "gh-token")
    args = cli.build_parser().parse_args(["changelog.md", "--repo", "kumahq/kuma"])
    assert cli.config_from_args(args).token == "api-token"
