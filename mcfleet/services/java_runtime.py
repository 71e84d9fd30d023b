# mcfleet/services/java_runtime.py
"""
Java runtime resolution for installs.

Prefers the system `java` when its major version is new enough, then a
previously downloaded portable runtime, and finally downloads a Temurin
build for the current OS/architecture into JAVA_DIR.
"""

import json
import logging
import os
import platform
import re
import shutil
import stat
import subprocess
import tarfile
import threading
import zipfile
from pathlib import Path
from typing import Callable, Dict, Optional

from mcfleet.core.config import DEFAULT_JAVA_VERSION, JAVA_DIR
from mcfleet.core.errors import IOFailure
from mcfleet.services.downloads import download_file

logger = logging.getLogger(__name__)

ADOPTIUM_BINARY_URL = "https://api.adoptium.net/v3/binary/latest/{version}/ga/{os}/{arch}/jre/hotspot/normal/eclipse"
MAX_JAVA_VERSION = 25
PATHS_FILE_NAME = "java_paths.json"

_VERSION_OUTPUT_RE = re.compile(r'version "(\d+)(?:\.(\d+))?')


def parse_required_version(requirement: Optional[str]) -> int:
    """'Java 17+' -> 17; anything without a Java version -> the default."""
    if requirement and "java" in requirement.lower():
        match = re.search(r"\d+", requirement)
        if match:
            return int(match.group())
    return DEFAULT_JAVA_VERSION


def parse_java_version(output: str) -> Optional[int]:
    """Major version from `java -version` output; handles the legacy 1.x scheme."""
    match = _VERSION_OUTPUT_RE.search(output or "")
    if not match:
        return None
    major = int(match.group(1))
    if major == 1 and match.group(2):
        return int(match.group(2))
    return major


def current_platform() -> tuple:
    system = platform.system().lower()
    os_name = {"darwin": "mac", "windows": "windows"}.get(system, "linux")
    machine = platform.machine().lower()
    arch = "aarch64" if machine in ("arm64", "aarch64") else "x64"
    return os_name, arch


class JavaRuntimeResolver:
    def __init__(
        self,
        java_dir: Path = JAVA_DIR,
        downloader: Callable[[str, Path], Path] = download_file,
        system_java: str = "java",
    ):
        self.java_dir = Path(java_dir)
        self.downloader = downloader
        self.system_java = system_java
        self._lock = threading.Lock()

    @property
    def paths_file(self) -> Path:
        return self.java_dir / PATHS_FILE_NAME

    def _load_paths(self) -> Dict[str, str]:
        if not self.paths_file.exists():
            return {}
        try:
            return json.loads(self.paths_file.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning("[Java] Ignoring unreadable %s", self.paths_file)
            return {}

    def _save_path(self, version: int, java_path: Path) -> None:
        paths = self._load_paths()
        paths[str(version)] = str(java_path)
        self.java_dir.mkdir(parents=True, exist_ok=True)
        self.paths_file.write_text(json.dumps(paths, indent=2), encoding="utf-8")

    def system_java_version(self) -> Optional[int]:
        try:
            result = subprocess.run(
                [self.system_java, "-version"],
                capture_output=True, text=True, timeout=10,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.info("[Java] No usable system Java: %s", e)
            return None
        return parse_java_version(result.stderr + result.stdout)

    def find_cached(self, required: int) -> Optional[str]:
        paths = self._load_paths()
        for version in range(required, MAX_JAVA_VERSION + 1):
            candidate = paths.get(str(version))
            if candidate and Path(candidate).exists():
                return candidate
        return None

    def ensure_available(self, requirement: Optional[str]) -> str:
        """Return a java executable satisfying the requirement, downloading if needed."""
        required = parse_required_version(requirement)
        system_version = self.system_java_version()
        if system_version is not None and system_version >= required:
            logger.info("[Java] Using system Java %d (need %d)", system_version, required)
            return shutil.which(self.system_java) or self.system_java

        cached = self.find_cached(required)
        if cached:
            logger.info("[Java] Using cached portable Java at %s", cached)
            return cached

        # Only downloads are serialized; re-check the cache once the lock is ours
        with self._lock:
            cached = self.find_cached(required)
            if cached:
                logger.info("[Java] Using portable Java %s fetched by another install", cached)
                return cached
            return self.download_runtime(required)

    def download_runtime(self, version: int) -> str:
        os_name, arch = current_platform()
        url = ADOPTIUM_BINARY_URL.format(version=version, os=os_name, arch=arch)
        suffix = ".zip" if os_name == "windows" else ".tar.gz"
        target_dir = self.java_dir / f"java{version}"
        archive = self.java_dir / f"java{version}{suffix}"

        logger.info("[Java] Downloading Java %d for %s/%s", version, os_name, arch)
        self.downloader(url, archive)
        try:
            if target_dir.exists():
                shutil.rmtree(target_dir)
            target_dir.mkdir(parents=True)
            if suffix == ".zip":
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(target_dir)
            else:
                with tarfile.open(archive, "r:gz") as tf:
                    tf.extractall(target_dir, filter="data")
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise IOFailure(f"Failed to unpack Java {version}: {e}") from e
        finally:
            archive.unlink(missing_ok=True)

        java_path = self._find_executable(target_dir)
        if java_path is None:
            raise IOFailure(f"No java executable found in downloaded Java {version}")
        if os.name != "nt":
            java_path.chmod(java_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        self._save_path(version, java_path)
        logger.info("[Java] Java %d installed at %s", version, java_path)
        return str(java_path)

    @staticmethod
    def _find_executable(root: Path) -> Optional[Path]:
        for name in ("java", "java.exe"):
            for candidate in sorted(root.rglob(name)):
                if candidate.is_file() and candidate.parent.name == "bin":
                    return candidate
        return None


_resolver: Optional[JavaRuntimeResolver] = None


def get_java_resolver() -> JavaRuntimeResolver:
    global _resolver
    if _resolver is None:
        _resolver = JavaRuntimeResolver()
    return _resolver
