"""信号管理模块。

将宿主进程收到的 OS 信号转换为对受监管子进程的操作：
- SIGINT: 向子进程组发送 SIGTERM（取消运行）
- 双击 SIGINT: 在窗口时间内第二次 SIGINT 向子进程组发送 SIGKILL
- SIGTERM: 向子进程组发送 SIGTERM

子进程运行在独立的进程组中，终端的 Ctrl+C 不会直接到达子进程，
必须经由此模块转发。

支持的配置：
- CG_DOUBLE_TAP_WINDOW: 双击强制终止窗口时间
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import get_config
from .runtime.process_supervisor import KILL_SIGNAL, ProcessSupervisor

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    Example:
        ```python
        supervisor = ProcessSupervisor()
        signal_manager = SignalManager(supervisor)

        async def main():
            await signal_manager.start()
            try:
                result = await supervisor.run(spec)
            finally:
                await signal_manager.stop()
        ```

    Attributes:
        supervisor: 受管理的进程监管器
        double_tap_window: 双击强制终止窗口时间（秒）
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        double_tap_window: Optional[float] = None,
        on_cancel: Optional[Callable[[int], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            supervisor: 受管理的进程监管器
            double_tap_window: 双击强制终止窗口时间（默认从配置读取）
            on_cancel: 每次转发信号后的回调，参数为发送的信号
        """
        self.supervisor = supervisor
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else get_config().double_tap_window
        )
        self._on_cancel = on_cancel

        # 内部状态
        self._last_sigint_time: float = 0.0
        self._cancel_requested: bool = False
        self._force_kill: bool = False
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._original_sigint_handler = None

    @property
    def is_cancel_requested(self) -> bool:
        """是否已请求取消。"""
        return self._cancel_requested

    @property
    def is_force_kill(self) -> bool:
        """是否已请求强制终止（双击 SIGINT）。"""
        return self._force_kill

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (double_tap_window={self.double_tap_window}s)"
            )
        else:
            # Windows: 使用 signal.signal() 设置处理器
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._handle_sigint(),
            )
            logger.debug("SIGINT handler installed on Windows")

    async def stop(self) -> None:
        """停止信号监听，恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except Exception as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except Exception as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 第一次：向子进程组发送 SIGTERM
        - 在双击窗口内再次收到：发送 SIGKILL
        """
        current_time = time.time()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if self._cancel_requested and time_since_last < self.double_tap_window:
            logger.warning("Double SIGINT detected, killing child process group")
            self._force_kill = True
            self._forward(KILL_SIGNAL)
            return

        logger.info(
            f"SIGINT received, terminating child. "
            f"Press Ctrl+C again within {self.double_tap_window}s to kill it."
        )
        self._cancel_requested = True
        self._forward(signal.SIGTERM)

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：终止子进程组。"""
        logger.info("SIGTERM received, terminating child")
        self._cancel_requested = True
        self._forward(signal.SIGTERM)

    def _forward(self, sig: int) -> None:
        self.supervisor.cancel(sig)
        if self._on_cancel:
            try:
                self._on_cancel(sig)
            except Exception as e:
                logger.warning(f"Error in cancel callback: {e}")
