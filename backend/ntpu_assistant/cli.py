"""
Command Line - 服務入口
serve 啟動 HTTP 服務、warmup 手動暖機、healthcheck 給容器健康檢查使用
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

import httpx
import uvicorn

from ntpu_assistant.core.config import Settings, get_settings
from ntpu_assistant.core.errors import ConfigError, NTPUError
from ntpu_assistant.core.log_setup import setup_logging
from ntpu_assistant.core.timeouts import HEALTHCHECK_TIMEOUT
from ntpu_assistant.services.container import ServiceContainer
from ntpu_assistant.services.warmup import MODULE_ORDER, parse_modules

logger = logging.getLogger(__name__)

UVICORN_LOG_LEVELS = {"debug": "debug", "info": "info", "warn": "warning", "warning": "warning", "error": "error"}


def _load_settings() -> Settings:
    return get_settings().validate_runtime()


def serve(settings: Settings) -> int:
    from ntpu_assistant.application import create_app

    app = create_app(settings)
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.PORT,
        log_level=UVICORN_LOG_LEVELS.get(settings.LOG_LEVEL.lower(), "info"),
        timeout_graceful_shutdown=int(settings.SHUTDOWN_TIMEOUT),
    )
    return 0


async def _run_warmup(settings: Settings, modules: List[str], reset: bool) -> int:
    container = ServiceContainer.from_settings(settings)
    try:
        result = await container.warmup.run(modules, reset=reset, warm_id="id" in modules)
    except NTPUError as e:
        logger.error("[CLI] 暖機失敗: %s", e)
        if container.warmup.last_result is not None:
            print(json.dumps(container.warmup.last_result.to_dict(), ensure_ascii=False, indent=2))
        return 1
    finally:
        await container.llm.close()
        await container.client.close()
        await asyncio.to_thread(container.store.close)
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    return 0


def healthcheck(url: str, timeout: float = HEALTHCHECK_TIMEOUT) -> int:
    """/readyz 在 timeout 內回 200 才算健康"""
    try:
        response = httpx.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        print(f"unhealthy: {e}", file=sys.stderr)
        return 1
    if response.status_code != 200:
        print(f"unhealthy: status {response.status_code}", file=sys.stderr)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ntpu-assistant", description="NTPU 校務查詢助理")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="啟動 HTTP 服務（預設）")

    warm = sub.add_parser("warmup", help="手動執行暖機")
    warm.add_argument("--modules", type=str, default="",
                      help="逗號分隔的模組（contact,program,id,course,syllabus），預設使用設定值")
    warm.add_argument("--reset", action="store_true", help="暖機前清空快取")

    health = sub.add_parser("healthcheck", help="檢查 /readyz")
    health.add_argument("--url", type=str, default="", help="預設 http://127.0.0.1:<PORT>/readyz")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "serve"

    if command == "healthcheck":
        try:
            port = get_settings().PORT
        except ValueError:
            port = 10000
        return healthcheck(args.url or f"http://127.0.0.1:{port}/readyz")

    try:
        settings = _load_settings()
    except (ConfigError, ValueError) as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 1
    setup_logging(settings.LOG_LEVEL)

    if command == "warmup":
        modules = parse_modules(args.modules) if args.modules else settings.warmup_modules
        unknown = [m for m in modules if m not in MODULE_ORDER]
        if unknown:
            print(f"unknown warmup modules: {', '.join(unknown)}", file=sys.stderr)
            return 1
        try:
            return asyncio.run(_run_warmup(settings, modules, args.reset))
        except NTPUError as e:
            logger.error("[CLI] 初始化失敗: %s", e)
            return 1

    try:
        return serve(settings)
    except NTPUError as e:
        logger.error("[CLI] 啟動失敗: %s", e)
        return 1


def healthcheck_main() -> int:
    return main(["healthcheck"] + sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
