"""
日志模块
进程级日志对象 log，以及按请求划分的结构化日志 RequestLogger
"""
import os
import sys
import json
import time
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# 不允许写入日志的字段（音频、转写文本等用户内容）
REDACTED_FIELDS = ("audio", "text", "transcription", "corrected")


def _build_logger() -> logging.Logger:
    logger = logging.getLogger("stt-gateway")
    if logger.handlers:
        return logger
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


log = _build_logger()


class RequestLogger:
    """
    请求级结构化日志

    每条记录输出一行 JSON，包含 timestamp、requestId、level、message、duration（毫秒），
    写入前会移除 REDACTED_FIELDS 中列出的字段。
    """

    def __init__(self, request_id: str, logger: Optional[logging.Logger] = None):
        self.request_id = request_id
        self._start = time.monotonic()
        self._logger = logger or log

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)

    def _record(self, level: str, message: str, fields: Dict[str, Any]) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "requestId": self.request_id,
            "level": level,
            "message": message,
            "duration": self.elapsed_ms(),
        }
        for k, v in fields.items():
            if k in REDACTED_FIELDS:
                continue
            entry[k] = v
        return json.dumps(entry, ensure_ascii=False, default=str)

    def debug(self, message: str, **fields):
        self._logger.debug(self._record("debug", message, fields))

    def info(self, message: str, **fields):
        self._logger.info(self._record("info", message, fields))

    def warning(self, message: str, **fields):
        self._logger.warning(self._record("warn", message, fields))

    def error(self, message: str, **fields):
        self._logger.error(self._record("error", message, fields))


def mask_secret(value: Optional[str]) -> str:
    """脱敏标识符（license key / device id），保留首尾 4 位"""
    if not value:
        return ""
    v = str(value)
    if len(v) <= 8:
        return v[:2] + "***"
    return v[:4] + "..." + v[-4:]
