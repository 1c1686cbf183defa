#!/usr/bin/env python3
"""
SSRF 対策を適用して URL を1件取得します。

Usage:
  safe-fetch [-s SETTING]... [-o OUTPUT] [-D] URL

Options:
  -s SETTING        : KEY=VALUE 形式でフェッチ設定を指定します（複数指定可）。
  -o OUTPUT         : 取得したボディを OUTPUT に保存します。
  -D                : デバッグモードで動作します。
"""

from __future__ import annotations

import logging
import pathlib
import sys

import docopt

import safe_fetch.config
import safe_fetch.fetcher
from safe_fetch.exceptions import ConfigError, SafeFetchError, http_status_for


def parse_settings(items: list[str]) -> dict[str, str]:
    """KEY=VALUE のリストを dict に変換.

    Raises:
        ConfigError: "=" を含まない項目がある場合
    """
    settings: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"Invalid setting (KEY=VALUE expected): {item}")
        settings[key.strip()] = value.strip()
    return settings


def main() -> None:
    """Console script entry point."""
    assert __doc__ is not None  # noqa: S101
    args = docopt.docopt(__doc__)

    url = args["URL"]
    output = pathlib.Path(args["-o"]) if args["-o"] else None
    debug_mode = args["-D"]

    logging.basicConfig(
        level=logging.DEBUG if debug_mode else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        config = safe_fetch.config.FetchConfig.parse(parse_settings(args["-s"]))
    except ConfigError as e:
        logging.error("Invalid setting: %s", e)
        sys.exit(2)

    fetcher = safe_fetch.fetcher.SafeFetcher(config)
    try:
        with fetcher.fetch(url) as response:
            body = response.read()
    except SafeFetchError as e:
        logging.error("Fetch failed (%d): %s", http_status_for(e.kind), e)
        sys.exit(1)

    logging.info("Status: %d (%s)", response.status, response.url)
    for name, value in response.headers.items():
        logging.debug("  %s: %s", name, value)
    logging.info("Content-Type: %s, %d bytes", response.content_type or "-", len(body))

    if output is not None:
        output.write_bytes(body)
        logging.info("Saved to %s", output)

    sys.exit(0 if response.ok else 1)


if __name__ == "__main__":
    main()
