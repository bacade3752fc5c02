#!/usr/bin/env python3
"""
Run the worker in development mode, restarting it when code changes
"""
import sys
import time
import subprocess
from pathlib import Path
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler


WATCH_PATHS = ['config/', 'database/', 'services/']
MIN_RESTART_INTERVAL = 2  # seconds


class WorkerRestartHandler(FileSystemEventHandler):
    """Restarts main.py on every saved .py file"""

    def __init__(self, command=None):
        self.command = command or [sys.executable, 'main.py']
        self.process = None
        self.last_restart = 0
        self.restart_worker()

    def on_modified(self, event):
        if event.is_directory or not event.src_path.endswith('.py'):
            return

        current_time = time.time()
        if current_time - self.last_restart < MIN_RESTART_INTERVAL:
            return

        print(f"🔄 Changed: {event.src_path}")
        self.restart_worker()
        self.last_restart = current_time

    def restart_worker(self):
        if self.process:
            print("🛑 Stopping worker...")
            self.process.terminate()
            self.process.wait()

        print("🚀 Starting worker...")
        self.process = subprocess.Popen(self.command)

    def stop(self):
        if self.process:
            self.process.terminate()
            self.process.wait()
            self.process = None


def main():
    print("🔧 Development mode, Ctrl+C to stop")

    event_handler = WorkerRestartHandler()
    observer = Observer()

    for path in WATCH_PATHS:
        if Path(path).exists():
            observer.schedule(event_handler, path, recursive=True)
            print(f"👁️ Watching: {path}")

    # main.py itself
    observer.schedule(event_handler, '.', recursive=False)
    observer.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\n👋 Stopping development mode...")
        observer.stop()
        event_handler.stop()

    observer.join()


if __name__ == "__main__":
    main()
