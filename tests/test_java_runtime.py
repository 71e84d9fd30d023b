import json
import threading

import pytest

from mcfleet.core.config import DEFAULT_JAVA_VERSION
from mcfleet.services.java_runtime import JavaRuntimeResolver, parse_java_version, parse_required_version


@pytest.mark.parametrize("requirement,expected", [
    ("Java 21+", 21),
    ("java17", 17),
    ("4GB RAM", DEFAULT_JAVA_VERSION),
    (None, DEFAULT_JAVA_VERSION),
])
def test_parse_required_version(requirement, expected):
    assert parse_required_version(requirement) == expected


@pytest.mark.parametrize("output,expected", [
    ('openjdk version "21.0.2" 2024-01-16', 21),
    ('java version "1.8.0_381"', 8),
    ("command not found", None),
])
def test_parse_java_version(output, expected):
    assert parse_java_version(output) == expected


def test_new_enough_system_java_wins(tmp_path, monkeypatch):
    resolver = JavaRuntimeResolver(java_dir=tmp_path, downloader=lambda url, dest: pytest.fail("no download"))
    monkeypatch.setattr(resolver, "system_java_version", lambda: 21)

    assert resolver.ensure_available("Java 17+")


def test_cached_runtime_is_reused(tmp_path, monkeypatch):
    java = tmp_path / "java21" / "bin" / "java"
    java.parent.mkdir(parents=True)
    java.write_text("", encoding="utf-8")
    (tmp_path / "java_paths.json").write_text(json.dumps({"21": str(java)}), encoding="utf-8")
    resolver = JavaRuntimeResolver(java_dir=tmp_path, downloader=lambda url, dest: pytest.fail("no download"))
    monkeypatch.setattr(resolver, "system_java_version", lambda: 8)

    assert resolver.ensure_available("Java 17+") == str(java)


def test_too_old_java_with_no_cache_downloads(tmp_path, monkeypatch):
    requested = []

    def _download(url, dest):
        requested.append(url)
        raise RuntimeError("offline")

    resolver = JavaRuntimeResolver(java_dir=tmp_path, downloader=_download)
    monkeypatch.setattr(resolver, "system_java_version", lambda: None)

    with pytest.raises(RuntimeError):
        resolver.ensure_available("Java 21")
    assert "/21/ga/" in requested[0]


def test_system_java_check_does_not_wait_for_running_download(tmp_path, monkeypatch):
    resolver = JavaRuntimeResolver(java_dir=tmp_path, downloader=lambda url, dest: pytest.fail("no download"))
    monkeypatch.setattr(resolver, "system_java_version", lambda: 21)
    results = []

    with resolver._lock:
        worker = threading.Thread(target=lambda: results.append(resolver.ensure_available("Java 17+")))
        worker.start()
        worker.join(timeout=2)

    assert not worker.is_alive()
    assert results and results[0]


def test_install_waiting_on_download_reuses_the_fresh_runtime(tmp_path, monkeypatch):
    resolver = JavaRuntimeResolver(java_dir=tmp_path, downloader=lambda url, dest: pytest.fail("no download"))
    monkeypatch.setattr(resolver, "system_java_version", lambda: None)
    lookups = iter([None, "/opt/jre21/bin/java"])
    monkeypatch.setattr(resolver, "find_cached", lambda required: next(lookups))

    assert resolver.ensure_available("Java 21") == "/opt/jre21/bin/java"
