"""childguard 环境变量配置管理。

环境变量:
    CG_TIMEOUT: 命令行默认超时时间（秒）
        - 默认 60 秒
        - 最小 0.1 秒

    CG_FLUSH_GRACE: 子进程正常退出后等待输出回传的时间（秒）
        - 默认 0.2 秒
        - 限制在 0-5 秒范围

    CG_REAP_TIMEOUT: 强制终止后等待回收子进程的时间（秒）
        - 默认 1.0 秒
        - 限制在 0.1-30 秒范围

    CG_IDENTITY_BACKEND: 用户身份查询方式
        - passwd = 直接读取系统用户数据库 (默认)
        - id = 调用 id(1) 命令

    CG_DOUBLE_TAP_WINDOW: 双击 Ctrl+C 强制终止的窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将发送 SIGKILL

    CG_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "IDENTITY_BACKENDS"]

# 支持的身份查询方式
IDENTITY_BACKENDS = frozenset({"passwd", "id"})

DEFAULT_TIMEOUT = 60.0
DEFAULT_FLUSH_GRACE = 0.2
DEFAULT_REAP_TIMEOUT = 1.0
DEFAULT_DOUBLE_TAP_WINDOW = 1.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_seconds(
    value: str | None,
    default: float,
    minimum: float,
    maximum: float | None = None,
) -> float:
    """解析秒数环境变量。

    Args:
        value: 环境变量值
        default: 未设置或无法解析时的默认值
        minimum: 下限
        maximum: 上限（None 表示不限制）

    Returns:
        限制在范围内的秒数
    """
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    seconds = max(minimum, seconds)
    if maximum is not None:
        seconds = min(seconds, maximum)
    return seconds


def _parse_identity_backend(value: str | None) -> str:
    """解析身份查询方式，无效值返回 passwd。"""
    if not value:
        return "passwd"
    backend = value.strip().lower()
    return backend if backend in IDENTITY_BACKENDS else "passwd"


@dataclass
class Config:
    """childguard 配置。

    Attributes:
        timeout: 命令行默认超时时间（秒）
        flush_grace: 正常退出后的输出回传等待时间（秒）
        reap_timeout: 强制终止后的回收等待时间（秒）
        identity_backend: 身份查询方式 (passwd/id)
        double_tap_window: 双击强制终止窗口时间（秒）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    timeout: float = DEFAULT_TIMEOUT
    flush_grace: float = DEFAULT_FLUSH_GRACE
    reap_timeout: float = DEFAULT_REAP_TIMEOUT
    identity_backend: str = "passwd"
    double_tap_window: float = DEFAULT_DOUBLE_TAP_WINDOW
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(timeout={self.timeout}, "
            f"flush_grace={self.flush_grace}, "
            f"reap_timeout={self.reap_timeout}, "
            f"identity_backend={self.identity_backend}, "
            f"double_tap_window={self.double_tap_window}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "childguard"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"cg_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("CG_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        timeout=_parse_seconds(os.environ.get("CG_TIMEOUT"), DEFAULT_TIMEOUT, 0.1),
        flush_grace=_parse_seconds(
            os.environ.get("CG_FLUSH_GRACE"), DEFAULT_FLUSH_GRACE, 0.0, 5.0
        ),
        reap_timeout=_parse_seconds(
            os.environ.get("CG_REAP_TIMEOUT"), DEFAULT_REAP_TIMEOUT, 0.1, 30.0
        ),
        identity_backend=_parse_identity_backend(os.environ.get("CG_IDENTITY_BACKEND")),
        double_tap_window=_parse_seconds(
            os.environ.get("CG_DOUBLE_TAP_WINDOW"), DEFAULT_DOUBLE_TAP_WINDOW, 0.1, 10.0
        ),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
