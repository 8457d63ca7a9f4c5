"""
ChronoNTP — NTP 時刻問い合わせツール
コマンドライン エントリーポイント

  chronontp                         標準表示
  chronontp --verbose               生バイト・ヘッダ全項目
  chronontp --json                  JSON
  chronontp --offset                オフセット(ms)のみ
  chronontp --continuous -i 1       連続モード
  chronontp -s pool.ntp.org -f time.google.com
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional

from config import DEFAULT_CONFIG_FILE, OUTPUT_FORMATS, Config
from monitor import run_monitor
from ntp_client import NTPClient
from ntp_errors import NTPError
from report import render

__version__ = "1.0.0"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def _setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="chronontp",
        description="Query NTP servers and report the local clock offset.",
    )
    p.add_argument("-s", "--server", default=None, help="primary NTP server")
    p.add_argument("-f", "--fallback", action="append", default=None, metavar="HOST",
                   help="fallback server (repeatable, tried in order)")
    p.add_argument("-p", "--port", type=int, default=None)
    p.add_argument("-t", "--timeout", type=float, default=None, help="per-server timeout in seconds")

    out = p.add_mutually_exclusive_group()
    out.add_argument("-j", "--json", action="store_true", help="output as JSON")
    out.add_argument("-v", "--verbose", action="store_true", help="detailed output with raw bytes")
    out.add_argument("-o", "--offset", action="store_true", help="output only the offset in ms")

    p.add_argument("-c", "--continuous", action="store_true", help="continuous sync mode")
    p.add_argument("-i", "--interval", type=float, default=None, help="seconds between queries")
    p.add_argument("-n", "--count", type=int, default=None, help="number of queries in continuous mode")
    p.add_argument("--config", default=None, help=f"JSON settings file (default: {DEFAULT_CONFIG_FILE})")
    p.add_argument("--debug", action="store_true")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def _output_format(args: argparse.Namespace, cfg: Config) -> str:
    if args.json:
        return "json"
    if args.offset:
        return "offset"
    if args.verbose:
        return "verbose"
    fmt = cfg.get("output", "format") or "default"
    return fmt if fmt in OUTPUT_FORMATS else "default"


def _build_client(args: argparse.Namespace, cfg: Config) -> NTPClient:
    kwargs = cfg.client_kwargs()
    if args.server:
        kwargs["server"] = args.server
    if args.fallback is not None:
        kwargs["fallback_servers"] = args.fallback
    if args.port is not None:
        kwargs["port"] = args.port
    if args.timeout is not None:
        kwargs["timeout"] = args.timeout
    return NTPClient(**kwargs)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.config and not os.path.exists(args.config):
        sys.stderr.write(f"Error: config file not found: {args.config}\n")
        return EXIT_USAGE

    cfg = Config(args.config or DEFAULT_CONFIG_FILE)
    _setup_logging(args.debug or bool(cfg.get("debug")))
    log = logging.getLogger("chronontp.main")

    try:
        client = _build_client(args, cfg)
    except ValueError as e:
        sys.stderr.write(f"Error: {e}\n")
        return EXIT_USAGE

    log.debug("servers=%s port=%d timeout=%.3fs", client.servers, client.port, client.timeout)

    try:
        if args.continuous:
            interval = args.interval if args.interval is not None else float(cfg.get("ntp", "interval") or 5.0)
            run_monitor(client, interval=interval, count=args.count)
            return EXIT_OK

        result = client.query()
        sys.stdout.write(render(result, _output_format(args, cfg)).rstrip("\n") + "\n")
        return EXIT_OK

    except NTPError as e:
        log.debug("query failed", exc_info=True)
        sys.stderr.write(f"Error: {e}\n")
        return EXIT_ERROR
    except ValueError as e:
        sys.stderr.write(f"Error: {e}\n")
        return EXIT_USAGE
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
