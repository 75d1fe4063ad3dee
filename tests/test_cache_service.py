"""
Unit Tests — Cache Service
==========================
Key computation, restore fallback by prefix, and the trust rule that only
primary-branch runs write to the cache.
"""
import json
import os
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from covpipe.core.errors import InfrastructureError
from covpipe.executor.job_container import ExecutionResult
from covpipe.parser.workflow_reader import CacheConfig
from covpipe.services.cache_service import CacheController

from conftest import FakeContainer


@pytest.fixture
def cfg():
    return CacheConfig(
        prefix="v0-rust-coverage",
        key_files=["Cargo.lock", "rust-toolchain.toml"],
        paths=["/usr/local/cargo/registry", "/workspace/target"],
    )


@pytest.fixture
def cache(tmp_path):
    return CacheController(str(tmp_path / "cache"), primary_branch="main")


OLD_KEY = "v0-rust-coverage-0123456789abcdef"
NEW_KEY = "v0-rust-coverage-fedcba9876543210"


def _job(exit_code=0):
    job = MagicMock()
    job.container = FakeContainer()
    job.exec.return_value = ExecutionResult(exit_code=exit_code, full_log="")
    return job


class TestKeys:

    def test_key_depends_on_lockfile(self, cache, cfg, tmp_path):
        (tmp_path / "Cargo.lock").write_text("v1")
        first = cache.compute_key(cfg, str(tmp_path), "rust:1", "rustup default stable")
        (tmp_path / "Cargo.lock").write_text("v2")
        second = cache.compute_key(cfg, str(tmp_path), "rust:1", "rustup default stable")

        assert first.startswith("v0-rust-coverage-")
        assert first != second

    def test_key_depends_on_toolchain(self, cache, cfg, tmp_path):
        a = cache.compute_key(cfg, str(tmp_path), "rust:1", "stable")
        b = cache.compute_key(cfg, str(tmp_path), "rust:1", "nightly")
        assert a != b

    @pytest.mark.parametrize("ref,expected", [
        ("refs/heads/main", True),
        ("refs/heads/feature", False),
        ("refs/pull/42/merge", False),
    ])
    def test_should_save(self, cache, ref, expected):
        assert cache.should_save(ref) is expected


class TestSave:

    def test_primary_branch_saves(self, cache, cfg):
        assert cache.save(_job(), cfg, NEW_KEY, "refs/heads/main") is True
        assert cache.has(NEW_KEY)

        entry_dir = os.path.join(cache.cache_root, NEW_KEY)
        assert sorted(os.listdir(entry_dir)) == ["0.tar", "1.tar", "entry.json"]
        with open(os.path.join(entry_dir, "entry.json")) as f:
            assert json.load(f)["paths"] == cfg.paths

    def test_pull_request_leaves_cache_unchanged(self, cache, cfg):
        job = _job()
        assert cache.save(job, cfg, NEW_KEY, "refs/pull/42/merge") is False
        assert os.listdir(cache.cache_root) == []

    def test_existing_key_not_overwritten(self, cache, cfg):
        cache.save(_job(), cfg, NEW_KEY, "refs/heads/main")
        entry = os.path.join(cache.cache_root, NEW_KEY, "entry.json")
        before = os.path.getmtime(entry)

        assert cache.save(_job(), cfg, NEW_KEY, "refs/heads/main") is False
        assert os.path.getmtime(entry) == before

    def test_missing_path_skipped(self, cache, cfg):
        job = MagicMock()
        job.container.get_archive.side_effect = [NotFound("gone"), (iter([b"data"]), {})]
        assert cache.save(job, cfg, NEW_KEY, "refs/heads/main") is True
        entry_dir = os.path.join(cache.cache_root, NEW_KEY)
        assert "0.tar" not in os.listdir(entry_dir)
        assert "1.tar" in os.listdir(entry_dir)

    def test_docker_error_leaves_no_partial_entry(self, cache, cfg):
        job = MagicMock()
        job.container.get_archive.side_effect = APIError("daemon gone")
        assert cache.save(job, cfg, NEW_KEY, "refs/heads/main") is False
        assert os.listdir(cache.cache_root) == []


class TestRestore:

    def test_miss(self, cache, cfg):
        assert cache.restore(_job(), cfg, NEW_KEY) is None

    def test_exact_hit(self, cache, cfg):
        cache.save(_job(), cfg, NEW_KEY, "refs/heads/main")
        job = _job()

        assert cache.restore(job, cfg, NEW_KEY) == NEW_KEY
        assert [path for path, _ in job.container.put] == ["/usr/local/cargo", "/workspace"]
        job.exec.assert_any_call("mkdir -p /usr/local/cargo")

    def test_prefix_fallback(self, cache, cfg):
        cache.save(_job(), cfg, OLD_KEY, "refs/heads/main")
        assert cache.restore(_job(), cfg, NEW_KEY) == OLD_KEY

    def test_other_prefix_ignored(self, cache, cfg):
        cache.save(_job(), cfg, "v1-other-0123456789abcdef", "refs/heads/main")
        assert cache.restore(_job(), cfg, NEW_KEY) is None

    def test_longer_prefix_not_matched(self, cache, cfg):
        cache.save(_job(), cfg, "v0-rust-coverage-old-0123456789abcdef", "refs/heads/main")
        cache.save(_job(), cfg, "v0-rust-coverage-nightly", "refs/heads/main")
        assert cache.lookup(NEW_KEY, cfg.prefix) is None

    def test_restore_error_is_a_miss(self, cache, cfg):
        cache.save(_job(), cfg, NEW_KEY, "refs/heads/main")
        job = _job()
        job.container = MagicMock()
        job.container.put_archive.side_effect = APIError("no space")
        assert cache.restore(job, cfg, NEW_KEY) is None

    def test_exec_failure_is_a_miss(self, cache, cfg):
        cache.save(_job(), cfg, NEW_KEY, "refs/heads/main")
        job = _job()
        job.exec.side_effect = InfrastructureError("Command failed in job container: daemon gone")
        assert cache.restore(job, cfg, NEW_KEY) is None

    def test_mkdir_failure_is_a_miss(self, cache, cfg):
        cache.save(_job(), cfg, NEW_KEY, "refs/heads/main")
        job = _job(exit_code=1)
        assert cache.restore(job, cfg, NEW_KEY) is None
        assert job.container.put == []

    def test_parent_is_shell_quoted(self, cache, cfg):
        odd = cfg.model_copy(update={"paths": ["/tmp/a b; touch pwned/target"]})
        cache.save(_job(), odd, NEW_KEY, "refs/heads/main")
        job = _job()
        assert cache.restore(job, odd, NEW_KEY) == NEW_KEY
        job.exec.assert_called_once_with("mkdir -p '/tmp/a b; touch pwned'")

    @pytest.mark.parametrize("content", [
        "{not json",
        "[]",
        '{"paths": "/usr/local/cargo"}',
        '{"paths": [], "created_at": "yesterday"}',
    ])
    def test_corrupt_exact_entry_is_a_miss(self, cache, cfg, content):
        entry_dir = os.path.join(cache.cache_root, NEW_KEY)
        os.makedirs(entry_dir)
        with open(os.path.join(entry_dir, "entry.json"), "w") as f:
            f.write(content)

        assert cache.lookup(NEW_KEY, cfg.prefix) is None
        assert cache.restore(_job(), cfg, NEW_KEY) is None

    def test_corrupt_exact_entry_falls_back_to_prefix(self, cache, cfg):
        cache.save(_job(), cfg, OLD_KEY, "refs/heads/main")
        entry_dir = os.path.join(cache.cache_root, NEW_KEY)
        os.makedirs(entry_dir)
        with open(os.path.join(entry_dir, "entry.json"), "w") as f:
            f.write("{not json")

        assert cache.restore(_job(), cfg, NEW_KEY) == OLD_KEY
