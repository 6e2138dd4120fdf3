#!/usr/bin/env python3
"""Run the backup scheduler in the foreground"""
import signal
import threading

from pgkeeper import create_app

if __name__ == '__main__':
    # The scheduler runs in a background thread; keep the main thread alive
    app = create_app()

    if not app.config.get('SCHEDULER_ENABLED'):
        raise SystemExit("SCHEDULER_ENABLED is not set, nothing to run")

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    stop.wait()
