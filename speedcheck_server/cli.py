#!/usr/bin/env python3
"""
speedcheck — CLI entry point

Subcommands
───────────
  serve   Start the SpeedCheck server
  run     Run a full speed test (latency, download, upload) against a server
  info    Query a running server for its limits and version

Usage examples
──────────────
  # Start the server on port 3000 with a 100 MB download ceiling
  speedcheck serve --port 3000 --max-download-mb 100

  # Run a test with 6 download threads and a 10 s download ceiling
  speedcheck run --url http://192.168.1.50:3000 \\
      --download-threads 6 --download-max 10

  # Query server info
  speedcheck info --url http://192.168.1.50:3000

Server settings also read PORT, MAX_DOWNLOAD_SIZE_MB, MAX_UPLOAD_SIZE_MB,
MAX_INFLIGHT_REQUESTS, SERVER_LOCATION and LOG_LEVEL from the environment;
flags win over the environment.
"""

import argparse
import json
import logging
import sys

from speedcheck.stability import StabilityConfig
from speedcheck_server.errors import ConfigError, TransportError

# ---------------------------------------------------------------------------
# Logging setup (called before anything else so imports log correctly)
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt   = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    # Quiet noisy loggers unless verbose
    if not verbose:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Subcommand: serve
# ---------------------------------------------------------------------------

def cmd_serve(args: argparse.Namespace) -> int:
    """Start the SpeedCheck server."""
    from speedcheck_server.config import ServerConfig
    from speedcheck_server.server import SpeedCheckServer

    try:
        config = ServerConfig.from_env(
            host=args.host,
            port=args.port,
            max_download_size_mb=args.max_download_mb,
            max_upload_size_mb=args.max_upload_mb,
            max_inflight_requests=args.max_inflight,
            server_location=args.location,
        )
    except ConfigError as exc:
        print(f"\n  Error: {exc}", file=sys.stderr)
        return 1

    if not args.verbose:
        logging.getLogger().setLevel(config.log_level.upper())
    server = SpeedCheckServer(config)
    server.start()   # blocks
    return 0


# ---------------------------------------------------------------------------
# Subcommand: run
# ---------------------------------------------------------------------------

def cmd_run(args: argparse.Namespace) -> int:
    """Run a speed test against a SpeedCheck server."""
    from speedcheck_server.client import SpeedCheckClient
    from speedcheck_server.config import ClientConfig

    try:
        config = ClientConfig(
            base_url=args.url,
            download_threads=args.download_threads,
            upload_threads=args.upload_threads,
            download_min_s=args.download_min,
            download_max_s=args.download_max,
            upload_min_s=args.upload_min,
            upload_max_s=args.upload_max,
            download_size_mb=args.download_size,
            download_chunk_kb=args.chunk,
            upload_size_mb=args.upload_size,
            ping_count=args.pings,
            stability=StabilityConfig(
                sample_count=args.stability_samples,
                window=args.stability_window,
                variance_threshold=args.stability_threshold,
            ),
        )
    except (ConfigError, ValueError) as exc:
        print(f"\n  Error: {exc}", file=sys.stderr)
        return 1

    client = SpeedCheckClient(config, show_progress=not args.json)
    report = client.run()
    if report is None:
        return 1
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    return 0


# ---------------------------------------------------------------------------
# Subcommand: info
# ---------------------------------------------------------------------------

def cmd_info(args: argparse.Namespace) -> int:
    """Print a running server's limits and version."""
    from speedcheck_server.transport import HttpTransport

    print(f"\n  Querying {args.url} ...\n")
    transport = HttpTransport(args.url, read_timeout=5.0, connect_timeout=5.0)
    try:
        data = transport.info()
    except TransportError as exc:
        print(f"  Error: {exc}", file=sys.stderr)
        return 1
    finally:
        transport.close()

    _print_info(data)
    return 0


def _print_info(data: dict) -> None:
    print(f"  Server         : {data.get('name', 'N/A')}")
    print(f"  Version        : {data.get('version', 'N/A')}")
    print(f"  Location       : {data.get('location', 'N/A')}")
    print(f"  Max download   : {data.get('maxDownloadSize', 'N/A')} MB")
    print(f"  Max upload     : {data.get('maxUploadSize', 'N/A')} MB")
    tests = ", ".join(data.get("supportedTests", [])) or "N/A"
    print(f"  Tests          : {tests}")
    print()


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="speedcheck",
        description="SpeedCheck — adaptive multi-stream network speed test",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    # ── serve ──────────────────────────────────────────────────────────
    p_serve = sub.add_parser(
        "serve",
        help="Start the SpeedCheck server",
        description="Start the SpeedCheck HTTP server (download / upload / ping endpoints).",
    )
    p_serve.add_argument(
        "--host", default=None, metavar="HOST",
        help="Interface to bind (default: $SPEEDCHECK_HOST or 0.0.0.0)",
    )
    p_serve.add_argument(
        "--port", type=int, default=None, metavar="PORT",
        help="TCP port to listen on (default: $PORT or 3000)",
    )
    p_serve.add_argument(
        "--max-download-mb", type=int, default=None, metavar="MB",
        help="Largest download a request may ask for (default: 50)",
    )
    p_serve.add_argument(
        "--max-upload-mb", type=int, default=None, metavar="MB",
        help="Per-request upload ceiling (default: 50)",
    )
    p_serve.add_argument(
        "--max-inflight", type=int, default=None, metavar="N",
        help="Concurrent transfer requests before answering 503 (default: 100)",
    )
    p_serve.add_argument(
        "--location", default=None, metavar="TEXT",
        help="Location string reported by /transfer/info",
    )

    # ── run ────────────────────────────────────────────────────────────
    p_run = sub.add_parser(
        "run",
        help="Run a speed test",
        description=(
            "Measure latency, jitter, download and upload throughput.\n"
            "Each transfer phase stops early once its throughput stabilizes."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_run.add_argument(
        "--url", default="http://127.0.0.1:3000", metavar="URL",
        help="Server base URL (default: http://127.0.0.1:3000)",
    )
    p_run.add_argument("--download-threads", type=int, default=4, metavar="N",
                       help="Parallel download connections (default: 4)")
    p_run.add_argument("--upload-threads", type=int, default=4, metavar="N",
                       help="Parallel upload connections (default: 4)")
    p_run.add_argument("--download-min", type=float, default=3.5, metavar="SECS",
                       help="Download time before early stop is allowed (default: 3.5)")
    p_run.add_argument("--download-max", type=float, default=8.0, metavar="SECS",
                       help="Download time ceiling (default: 8)")
    p_run.add_argument("--upload-min", type=float, default=3.0, metavar="SECS",
                       help="Upload time before early stop is allowed (default: 3)")
    p_run.add_argument("--upload-max", type=float, default=6.0, metavar="SECS",
                       help="Upload time ceiling (default: 6)")
    p_run.add_argument("--download-size", type=int, default=50, metavar="MB",
                       help="Size of each download request (default: 50)")
    p_run.add_argument("--chunk", type=int, default=512, metavar="KB",
                       help="Server chunk size for downloads (default: 512)")
    p_run.add_argument("--upload-size", type=int, default=10, metavar="MB",
                       help="Size of each upload request (default: 10)")
    p_run.add_argument("--pings", type=int, default=10, metavar="N",
                       help="Latency probes (default: 10)")
    p_run.add_argument("--stability-samples", type=int, default=5, metavar="N",
                       help="Samples needed before early stop (default: 5)")
    p_run.add_argument("--stability-window", type=int, default=10, metavar="N",
                       help="Samples examined for stability (default: 10)")
    p_run.add_argument("--stability-threshold", type=float, default=0.05, metavar="X",
                       help="Relative variance threshold (default: 0.05)")
    p_run.add_argument("--json", action="store_true",
                       help="Print the report as JSON instead of the summary")

    # ── info ───────────────────────────────────────────────────────────
    p_info = sub.add_parser(
        "info",
        help="Query a running SpeedCheck server",
        description="Print a SpeedCheck server's limits, location and version.",
    )
    p_info.add_argument(
        "--url", default="http://127.0.0.1:3000", metavar="URL",
        help="Server base URL (default: http://127.0.0.1:3000)",
    )

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    parser = build_parser()
    args   = parser.parse_args()
    _setup_logging(args.verbose)

    dispatch = {
        "serve": cmd_serve,
        "run":   cmd_run,
        "info":  cmd_info,
    }

    handler = dispatch.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
