#!/usr/bin/env python3
"""
Development launcher for ringdvr.

- Stops ringdvr.service on startup if it is active (the ports and the
  recordings directory cannot be shared)
- Runs the daemon in the foreground with DEV=1 (debug logging)
- Ctrl-C exits cleanly
- Ctrl-R stops both encoders and starts the daemon again with a fresh config
"""

import os
import signal
import subprocess
import sys
import termios
import threading
import tty

from ringdvr import daemon

SERVICE = "ringdvr.service"


def stop_service():
    active = subprocess.run(["systemctl", "is-active", "--quiet", SERVICE], check=False)
    if active.returncode == 0:
        print(f"[dev] Stopping {SERVICE} ...", flush=True)
        subprocess.run(["systemctl", "stop", SERVICE], check=False)


class KeyWatcher(threading.Thread):
    def __init__(self):
        super().__init__(daemon=True)
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        self.restart_requested = False

    def run(self):
        while True:
            ch = os.read(self.fd, 1)
            if not ch:
                continue
            if ch == b"\x03":  # Ctrl-C
                os.kill(os.getpid(), signal.SIGINT)
            elif ch == b"\x12":  # Ctrl-R
                self.restart_requested = True
                os.kill(os.getpid(), signal.SIGTERM)

    def restore(self):
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)


def main():
    try:
        stop_service()
    except FileNotFoundError:
        pass  # no systemd on this box
    os.environ.setdefault("DEV", "1")
    print("[dev] Running ringdvr daemon (Ctrl-C to exit, Ctrl-R to restart)", flush=True)

    while True:
        watcher = KeyWatcher() if sys.stdin.isatty() else None
        if watcher is not None:
            watcher.start()
        try:
            rc = daemon.main(sys.argv[1:])
        finally:
            if watcher is not None:
                watcher.restore()

        if watcher is not None and watcher.restart_requested:
            print("[dev] Restart requested via Ctrl-R", flush=True)
            continue
        print("[dev] Exiting dev mode", flush=True)
        return rc


if __name__ == "__main__":
    sys.exit(main())
