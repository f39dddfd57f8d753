"""
speedcheck_server — server, client and CLI layers for SpeedCheck.

Modules
───────
  config     — ServerConfig / ClientConfig (env + flags, validated)
  errors     — exception taxonomy
  metrics    — ServerStats: byte totals and inflight gauge
  generator  — ByteStreamGenerator: clamped, backpressure-aware random stream
  admission  — AdmissionController: inflight threshold gate
  receiver   — UploadReceiver: upload ingest with byte ceiling
  server     — aiohttp app + SpeedCheckServer lifecycle
  transport  — HttpTransport: requests-based download / upload / ping
  transfer   — TransferOrchestrator: parallel transfer phases
  latency    — LatencyProbe: RTT average and jitter
  client     — SpeedCheckClient: latency → download → upload run
  cli        — argparse CLI: serve / run / info subcommands

Stability decisions live in the separate speedcheck package:
  - Only config.py and transfer.py import from speedcheck.*
"""

__version__ = "1.60.0"
