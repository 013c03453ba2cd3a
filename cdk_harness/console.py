"""Timestamped console output shared by every stage script."""

import os
import sys
import time


def now_ts() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())


def debug_enabled() -> bool:
    return os.getenv("HARNESS_DEBUG", "").strip().lower() in ("1", "true", "yes", "on")


def info(msg: str):
    print(f"[{now_ts()}] [INFO] {msg}", flush=True)


def warn(msg: str):
    print(f"[{now_ts()}] [WARN] {msg}", flush=True)


def error(msg: str):
    print(f"[{now_ts()}] [ERROR] {msg}", file=sys.stderr, flush=True)


def debug(msg: str):
    if debug_enabled():
        print(f"[{now_ts()}] [DEBUG] {msg}", flush=True)


def success(msg: str):
    print(f"[{now_ts()}] [SUCCESS] {msg}", flush=True)


def section(title: str):
    print("\n" + "=" * 8 + f" {title} " + "=" * 8, flush=True)
