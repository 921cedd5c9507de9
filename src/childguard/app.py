"""childguard 命令行入口。

用法:
    childguard [--cwd DIR] [--user NAME] [--home DIR] [--timeout SEC]
               [--env KEY=VALUE ...] [--identity-backend passwd|id]
               [--quiet] COMMAND [ARGS...]

退出码:
    - 子进程正常退出：子进程退出码（被信号 N 终止时为 128+N）
    - 超时：124
    - 启动失败：1
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from . import __version__
from .config import IDENTITY_BACKENDS, get_config
from .runtime import (
    CredentialResolver,
    ProcessSpec,
    ProcessSupervisor,
    RunResult,
    RunStatus,
    get_lookup,
)
from .signal_manager import SignalManager

__all__ = ["build_parser", "exit_code_for", "run_command", "main"]

logger = logging.getLogger(__name__)

# 与 timeout(1) 一致
TIMEOUT_EXIT_CODE = 124


def _parse_env_entry(value: str) -> tuple[str, str]:
    """解析 KEY=VALUE 形式的环境变量参数。"""
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {value!r}")
    return key, val


def _parse_timeout(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid timeout: {value!r}") from None
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"timeout must be positive, got {value!r}")
    return seconds


def build_parser() -> argparse.ArgumentParser:
    """构建命令行解析器。"""
    config = get_config()
    parser = argparse.ArgumentParser(
        prog="childguard",
        description="Run a command in its own process group under a timeout.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--cwd", type=Path, default=None, help="Working directory")
    parser.add_argument("--user", default=None, help="Run the command as this user")
    parser.add_argument("--home", default=None, help="Force HOME for the command")
    parser.add_argument(
        "--timeout",
        type=_parse_timeout,
        default=config.timeout,
        help=f"Timeout in seconds (default: {config.timeout})",
    )
    parser.add_argument(
        "--env",
        type=_parse_env_entry,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set an environment variable (repeatable)",
    )
    parser.add_argument(
        "--identity-backend",
        choices=sorted(IDENTITY_BACKENDS),
        default=config.identity_backend,
        help="How user names are resolved",
    )
    parser.add_argument("--quiet", action="store_true", help="Discard the command's output")
    parser.add_argument("command", help="Command to run")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Command arguments")
    return parser


def exit_code_for(result: RunResult) -> int:
    """将运行结果映射为命令行退出码。"""
    if result.status is RunStatus.TIMEOUT:
        return TIMEOUT_EXIT_CODE
    if result.exit_code < 0:
        # 被信号终止
        return 128 - result.exit_code
    return result.exit_code


async def run_command(args: argparse.Namespace) -> RunResult:
    """按命令行参数运行一次受监管的命令。"""
    env = None
    if args.env:
        env = dict(os.environ)
        env.update(dict(args.env))

    spec = ProcessSpec(
        command=args.command,
        args=args.args,
        timeout=args.timeout,
        cwd=args.cwd,
        env=env,
        user=args.user,
        home_dir=args.home,
    )
    supervisor = ProcessSupervisor(
        resolver=CredentialResolver(get_lookup(args.identity_backend)),
    )

    stdout = None if args.quiet else _stream_sink(sys.stdout)
    stderr = None if args.quiet else _stream_sink(sys.stderr)

    signal_manager = SignalManager(supervisor)
    await signal_manager.start()
    try:
        result = await supervisor.run(spec, stdout=stdout, stderr=stderr)
    finally:
        await signal_manager.stop()

    if result.error is not None:
        logger.error(f"{args.command}: {result.error}")
    logger.debug(f"Run finished: {result}")
    return result


def _stream_sink(stream):
    """返回写入并立即刷新文本流底层缓冲区的 sink。"""
    buffer = getattr(stream, "buffer", None)

    def write(chunk: bytes) -> None:
        if buffer is None:
            # 没有二进制缓冲区的文本流（如被替换的 sys.stdout）
            stream.write(chunk.decode(errors="replace"))
            stream.flush()
            return
        buffer.write(chunk)
        buffer.flush()

    return write


def _setup_logging() -> None:
    config = get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 childguard 命名空间启用详细日志
    logging.getLogger("childguard").setLevel(log_level)


def main(argv: list[str] | None = None) -> None:
    """主入口点。"""
    args = build_parser().parse_args(argv)
    _setup_logging()

    result = asyncio.run(run_command(args))
    sys.exit(exit_code_for(result))


if __name__ == "__main__":
    main()
