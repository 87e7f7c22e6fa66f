#!/usr/bin/env python3
"""
Log viewer for the sync services started by run_services.py
"""
import os
import time
import glob
from pathlib import Path

from run_services import LOGS_DIR, SERVICES


def find_latest_logs(logs_dir=LOGS_DIR):
    """Latest log file per service ({service: path or None}), or None without a logs directory"""
    logs_dir = Path(logs_dir)
    if not logs_dir.exists():
        print("No logs directory found. Run the services first.")
        return None

    latest = {}
    for name in SERVICES:
        logs = glob.glob(str(logs_dir / f"{name}_*.log"))
        latest[name] = max(logs, key=os.path.getctime) if logs else None
    return latest


def read_tail(log_file, lines=50):
    with open(log_file, 'r') as f:
        all_lines = f.readlines()
    return all_lines[-lines:]


def _log_exists(log_file):
    if log_file and os.path.exists(log_file):
        return True
    print(f"Log file not found: {log_file}")
    return False


def tail_log(log_file, lines=50):
    """Show the last N lines of a log file"""
    if not _log_exists(log_file):
        return

    try:
        last_lines = read_tail(log_file, lines)
    except OSError as e:
        print(f"Error reading log file: {e}")
        return

    print(f"\n=== Last {len(last_lines)} lines from {os.path.basename(log_file)} ===")
    for line in last_lines:
        print(line.rstrip())


def new_lines(log_file, poll_interval=0.1):
    """Yield lines appended to log_file from the first next() on"""
    with open(log_file, 'r') as f:
        f.seek(0, os.SEEK_END)
        while True:
            line = f.readline()
            if line:
                yield line.rstrip()
            else:
                time.sleep(poll_interval)


def follow_log(log_file):
    """Print new lines as the service writes them, until Ctrl+C"""
    if not _log_exists(log_file):
        return

    print(f"\n=== Following {os.path.basename(log_file)} (Press Ctrl+C to stop) ===")
    try:
        for line in new_lines(log_file):
            print(line)
    except KeyboardInterrupt:
        print("\nStopped following log")
    except OSError as e:
        print(f"Error following log: {e}")


def main():
    print("Jira Sync Log Viewer")
    print("=" * 40)

    latest = find_latest_logs()
    if not latest or not any(latest.values()):
        return

    names = list(latest)
    for name in names:
        print(f"Latest {name} log: {latest[name]}")

    while True:
        print("\nOptions:")
        options = []
        for name in names:
            options.append((f"Show last 50 lines of {name} log", lambda n=name: tail_log(latest[n], 50)))
        for name in names:
            options.append((f"Follow {name} log in real-time", lambda n=name: follow_log(latest[n])))
        options.append(("Show all logs (last 20 lines each)",
                        lambda: [tail_log(latest[n], 20) for n in names]))

        for number, (label, _) in enumerate(options, start=1):
            print(f"{number}. {label}")
        exit_choice = len(options) + 1
        print(f"{exit_choice}. Exit")

        choice = input(f"\nEnter your choice (1-{exit_choice}): ").strip()
        if choice == str(exit_choice):
            print("Goodbye!")
            break
        if choice.isdigit() and 1 <= int(choice) <= len(options):
            options[int(choice) - 1][1]()
        else:
            print(f"Invalid choice. Please enter 1-{exit_choice}.")


if __name__ == "__main__":
    main()
