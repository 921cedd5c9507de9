"""childguard - 受监管的外部进程执行引擎。

在独立进程组中启动子进程，可选以其他用户身份运行，强制超时，
并保证子进程及其派生进程被回收或终止。

环境变量:
    CG_TIMEOUT: 命令行默认超时（秒，默认 60）
    CG_IDENTITY_BACKEND: 用户身份查询方式 (passwd/id)
    CG_LOG_DEBUG: 日志调试模式 (默认 false)

用法:
    childguard --timeout 5 -- echo hello
"""

__version__ = "0.1.0"

from .runtime import (
    ProcessSpec,
    ProcessSupervisor,
    RunResult,
    RunStatus,
)

__all__ = [
    "__version__",
    "ProcessSpec",
    "ProcessSupervisor",
    "RunResult",
    "RunStatus",
]
