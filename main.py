#!/usr/bin/env python3
"""
Development launcher for Sentry.

- Loads configuration and runs the camera adapter HTTP API in the foreground
- Ctrl-C or SIGTERM stops the API and any running capture engines
"""

import signal
import sys

from sentry import web_api


def handle_signal(signum, frame):  # noqa
    print(f"[dev] received signal {signum}, shutting down...", flush=True)
    raise KeyboardInterrupt


def main():
    signal.signal(signal.SIGTERM, handle_signal)
    print("[dev] Running sentry web_api (Ctrl-C to exit)")
    return web_api.cli_main(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
