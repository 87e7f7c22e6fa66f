#!/usr/bin/env python3
"""
Run the incremental sync service and the daily full sync side by side,
each writing to its own log file under logs/.
"""
import subprocess
import sys
import time
import signal
import logging
import datetime
from pathlib import Path

import sync_config

logger = logging.getLogger(__name__)

SCRIPT = Path(__file__).parent / 'jira_sync.py'
LOGS_DIR = Path("logs")

SERVICES = {
    'incremental_sync': ['--service', '--no-daily-full'],
    'daily_full_sync': ['--daily-full'],
}


def signal_handler(signum, frame):
    """Turn SIGTERM into the same shutdown path as Ctrl+C"""
    raise KeyboardInterrupt


def setup_logging(logs_dir=LOGS_DIR):
    """Create logs directory and return {service: log file path}"""
    logs_dir.mkdir(exist_ok=True)
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    return {name: logs_dir / f"{name}_{timestamp}.log" for name in SERVICES}


def start_service(name, args, log_path):
    with open(log_path, 'w') as log_file:
        return subprocess.Popen([sys.executable, str(SCRIPT), *args],
                                stdout=log_file,
                                stderr=subprocess.STDOUT,
                                universal_newlines=True,
                                bufsize=1)


def stop_all(processes):
    for name, process in processes.items():
        if process.poll() is None:
            logger.info("Stopping %s...", name)
            process.terminate()
            process.wait()


def main():
    sync_config.configure_logging()
    signal.signal(signal.SIGTERM, signal_handler)

    if not SCRIPT.exists():
        logger.error("%s not found", SCRIPT)
        return 1

    log_paths = setup_logging()
    processes = {}

    try:
        for name, args in SERVICES.items():
            processes[name] = start_service(name, args, log_paths[name])
            logger.info("%s started (PID %s), logging to %s", name, processes[name].pid, log_paths[name])

        logger.info("Use 'python view_logs.py' or 'tail -f logs/<service>_*.log' to follow the services")
        logger.info("Press Ctrl+C to stop all services")

        while True:
            stopped = [name for name, process in processes.items() if process.poll() is not None]
            if stopped:
                logger.error("Service stopped: %s", ", ".join(stopped))
                stop_all(processes)
                return 1
            time.sleep(5)

    except KeyboardInterrupt:
        logger.info("Received shutdown signal. Stopping all services...")
        stop_all(processes)
        logger.info("All services stopped")
        return 0


if __name__ == "__main__":
    exit(main())
