"""
Tests for resolving script sources into local files.
"""

import asyncio
import shutil
import subprocess
import time
from pathlib import Path

import httpx
import pytest

from scriptlab.errors import ConfigurationError, ScriptAcquisitionError
from scriptlab.models import ScriptSource
from scriptlab.script_source import ScriptSourceResolver, validate_source

SCRIPT = """// ==UserScript==
// @name        Dark Toggle
// @version     1.2
// ==/UserScript==
document.body.classList.toggle('dark');
"""


@pytest.fixture
def resolver(tmp_path):
    tmp = tmp_path / "tmp"
    tmp.mkdir()
    return ScriptSourceResolver(fetch_timeout_s=5, git_timeout_s=30, tmp_dir=str(tmp))


def leftovers(resolver):
    return sorted(p.name for p in Path(resolver.tmp_dir).iterdir())


class TestValidateSource:
    def test_none_given(self):
        with pytest.raises(ConfigurationError):
            validate_source(ScriptSource())

    def test_more_than_one_given(self):
        with pytest.raises(ConfigurationError, match="ambiguous"):
            validate_source(ScriptSource(path="a.js", url="https://x.test/a.js"))

    def test_git_needs_repo_and_path(self):
        with pytest.raises(ConfigurationError):
            validate_source(ScriptSource(git_repo="https://x.test/repo.git"))


class TestResolveLocal:
    async def test_local_path_is_used_as_is(self, resolver, tmp_path):
        path = tmp_path / "dark.user.js"
        path.write_text(SCRIPT)
        resolved = await resolver.resolve(ScriptSource(path=str(path)))
        assert resolved.path == path
        assert resolved.temp_path is None
        assert resolved.meta.name == "Dark Toggle"

    async def test_unreadable_path_fails(self, resolver, tmp_path):
        with pytest.raises(ScriptAcquisitionError):
            await resolver.resolve(ScriptSource(path=str(tmp_path / "missing.js")))

    async def test_inline_content_goes_to_one_temp_file(self, resolver):
        resolved = await resolver.resolve(ScriptSource(content=SCRIPT))
        assert resolved.temp_path == resolved.path
        assert resolved.path.read_text() == SCRIPT
        assert len(list(resolved.path.parent.iterdir())) == 1


class TestResolveRemote:
    async def test_fetches_script(self, resolver, httpserver):
        httpserver.expect_request("/dark.user.js").respond_with_data(SCRIPT, content_type="text/javascript")
        resolved = await resolver.resolve(ScriptSource(url=httpserver.url_for("/dark.user.js")))
        assert resolved.kind == "url"
        assert resolved.content == SCRIPT
        assert resolved.meta.version == "1.2"

    async def test_error_status_is_fatal(self, resolver, httpserver):
        httpserver.expect_request("/gone.user.js").respond_with_data("nope", status=404)
        with pytest.raises(ScriptAcquisitionError, match="404"):
            await resolver.resolve(ScriptSource(url=httpserver.url_for("/gone.user.js")))

    async def test_undecodable_body_leaves_no_temp_file(self, resolver, httpserver):
        httpserver.expect_request("/latin1.user.js").respond_with_data(b"// caf\xe9\n")
        with pytest.raises(ScriptAcquisitionError, match="cannot read"):
            await resolver.resolve(ScriptSource(url=httpserver.url_for("/latin1.user.js")))
        assert leftovers(resolver) == []

    async def test_slow_body_is_bounded_by_one_deadline(self, tmp_path):
        async def drip():
            for _ in range(10):
                await asyncio.sleep(0.2)
                yield b"// ..\n"

        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=drip()))
        resolver = ScriptSourceResolver(fetch_timeout_s=0.5, tmp_dir=str(tmp_path), transport=transport)
        started = time.monotonic()
        with pytest.raises(ScriptAcquisitionError, match="timed out"):
            await resolver.resolve(ScriptSource(url="https://scripts.example.test/slow.user.js"))
        assert time.monotonic() - started < 1.5
        assert list(tmp_path.iterdir()) == []


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestResolveGit:
    @pytest.fixture
    def repo(self, tmp_path):
        repo = tmp_path / "repo"
        (repo / "scripts").mkdir(parents=True)
        (repo / "scripts" / "dark.user.js").write_text(SCRIPT)
        git = ["git", "-C", str(repo), "-c", "user.name=t", "-c", "user.email=t@example.test"]
        subprocess.run(["git", "init", "-q", str(repo)], check=True)
        subprocess.run([*git, "add", "."], check=True)
        subprocess.run([*git, "commit", "-q", "-m", "init"], check=True)
        return repo

    async def test_shallow_clone_reads_relative_path(self, resolver, repo):
        resolved = await resolver.resolve(ScriptSource(git_repo=repo.as_uri(), git_path="scripts/dark.user.js"))
        assert resolved.kind == "git"
        assert resolved.meta.name == "Dark Toggle"
        assert resolved.temp_path is not None and resolved.temp_path.is_dir()

    async def test_path_outside_clone_is_rejected(self, resolver, repo):
        with pytest.raises(ScriptAcquisitionError, match="escapes"):
            await resolver.resolve(ScriptSource(git_repo=repo.as_uri(), git_path="../../etc/passwd"))
        assert leftovers(resolver) == []

    async def test_missing_path_in_clone_removes_clone(self, resolver, repo):
        with pytest.raises(ScriptAcquisitionError, match="cannot read"):
            await resolver.resolve(ScriptSource(git_repo=repo.as_uri(), git_path="scripts/missing.user.js"))
        assert leftovers(resolver) == []

    async def test_bad_repo_fails(self, resolver, tmp_path):
        with pytest.raises(ScriptAcquisitionError):
            await resolver.resolve(
                ScriptSource(git_repo=(tmp_path / "nope").as_uri(), git_path="a.js")
            )
        assert leftovers(resolver) == []
