"""Pytest configuration and fixtures."""

import subprocess
import threading
import time
from pathlib import Path
from typing import Iterable, Optional

import pytest

from pink_compressor import EncodeError


# =============================================================================
# Fake Encoders
# =============================================================================


class FakeEncoder:
    """Writes a quarter-size placeholder output and records every call."""

    def __init__(self, fail_names: Iterable[str] = (), delay: float = 0.0):
        self.fail_names = set(fail_names)
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def encode(self, source: Path, destination: Path, quality: int) -> None:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.calls.append((source, destination, quality))
        try:
            if self.delay:
                time.sleep(self.delay)
            if source.name in self.fail_names:
                raise EncodeError(f"Invalid data found when processing input {source.name}")
            destination.write_bytes(b"w" * (source.stat().st_size // 4))
        finally:
            with self._lock:
                self.in_flight -= 1


def fake_ffmpeg_run(cmd, **kwargs):
    """Stand-in for subprocess.run: 'corrupt' sources fail, others get a quarter-size output."""
    source = Path(cmd[cmd.index("-i") + 1])
    destination = Path(cmd[-1])
    if "corrupt" in source.name:
        return subprocess.CompletedProcess(cmd, 1, "", "ffmpeg version 6.0\nInvalid data found when processing input\n")
    destination.write_bytes(b"w" * (source.stat().st_size // 4))
    return subprocess.CompletedProcess(cmd, 0, "", "")


# =============================================================================
# Directory Fixtures
# =============================================================================


def write_file(path: Path, size: int, fill: Optional[bytes] = None) -> Path:
    path.write_bytes((fill or b"\0") * size)
    return path


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def image_dir(tmp_path: Path) -> Path:
    """a.png (2,000,000 bytes) and b.jpg (1,000,000 bytes)."""
    directory = tmp_path / "images"
    directory.mkdir()
    write_file(directory / "a.png", 2_000_000)
    write_file(directory / "b.jpg", 1_000_000)
    return directory


@pytest.fixture
def many_images_dir(tmp_path: Path) -> Path:
    """Twenty images of distinct sizes."""
    directory = tmp_path / "many"
    directory.mkdir()
    for i in range(20):
        write_file(directory / f"img{i:02d}.png", 1000 + i * 137)
    return directory
