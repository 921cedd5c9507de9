"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 模拟子进程脚本
FAKE_CHILD = Path(__file__).parent / "fixtures" / "fake_child.py"


class StaticLookup:
    """返回固定结果的身份查询（测试用）。"""

    def __init__(self, uid: int = 1000, gid: int = 1000, report: str = "", error: Exception | None = None):
        self.uid = uid
        self.gid = gid
        self.report = report or f"uid={uid}(alice) gid={gid}(alice) groups=27(sudo),999(docker)"
        self.error = error
        self.calls: list[str] = []

    def lookup(self, username: str) -> tuple[int, int, str]:
        self.calls.append(username)
        if self.error is not None:
            raise self.error
        return self.uid, self.gid, self.report


def _pid_alive(pid: int) -> bool:
    """进程是否仍在运行（僵尸进程视为已退出）。"""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True

    proc = Path("/proc")
    if not proc.is_dir():
        return True
    try:
        stat = (proc / str(pid) / "stat").read_text()
    except OSError:
        return False
    state = stat.rsplit(")", 1)[1].split()[0]
    return state not in ("Z", "X")


def _wait_dead(pid: int, timeout: float = 3.0) -> bool:
    """等待进程退出，返回是否已退出。"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _pid_alive(pid):
            return True
        time.sleep(0.05)
    return not _pid_alive(pid)


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """临时工作目录。"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def fake_child() -> list[str]:
    """运行模拟子进程脚本的命令前缀。"""
    return [sys.executable, str(FAKE_CHILD)]


@pytest.fixture
def static_lookup():
    """StaticLookup 工厂。"""
    return StaticLookup


@pytest.fixture
def pid_alive():
    """检查进程是否存活的函数。"""
    return _pid_alive


@pytest.fixture
def wait_dead():
    """等待进程退出的函数。"""
    return _wait_dead
