#!/usr/bin/env python3
"""
Background Service for the Check-in Liveness Switch
Runs the daily scheduler tick as a daemon process
"""

import logging
import os
import signal
import sys
import time

from checkin_config import load_config, setup_logging
from checkin_system import CheckinSystem

logger = logging.getLogger(__name__)

DEFAULT_PIDFILE = '/tmp/checkin_switch.pid'
DEFAULT_LOGFILE = '/tmp/checkin_switch_daemon.log'


class CheckinDaemon:
    """Background daemon service for the check-in scheduler"""

    def __init__(self, pidfile=DEFAULT_PIDFILE, config_file=None, logfile=DEFAULT_LOGFILE):
        self.pidfile = pidfile
        self.config_file = config_file
        self.logfile = logfile
        self.system = None

    def daemonize(self):
        """Convert process to daemon"""
        try:
            pid = os.fork()
            if pid > 0:
                sys.exit(0)
        except OSError as e:
            sys.stderr.write(f"Fork #1 failed: {e}\n")
            sys.exit(1)

        # Decouple from parent environment; the working directory is kept so
        # relative config and database paths still resolve
        os.setsid()
        os.umask(0o022)

        try:
            pid = os.fork()
            if pid > 0:
                sys.exit(0)
        except OSError as e:
            sys.stderr.write(f"Fork #2 failed: {e}\n")
            sys.exit(1)

        sys.stdout.flush()
        sys.stderr.flush()

        with open('/dev/null', 'r') as si:
            os.dup2(si.fileno(), sys.stdin.fileno())
        with open(self.logfile, 'a+') as so:
            os.dup2(so.fileno(), sys.stdout.fileno())
            os.dup2(so.fileno(), sys.stderr.fileno())

        self.write_pid()

    def write_pid(self):
        with open(self.pidfile, 'w') as f:
            f.write(f"{os.getpid()}\n")

    def read_pid(self):
        """PID from the pidfile, or None if there is no usable pidfile"""
        try:
            with open(self.pidfile, 'r') as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def is_alive(self, pid) -> bool:
        try:
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        if self.system is not None:
            self.system.driver.stop()

    def cleanup(self):
        """Remove the pidfile"""
        try:
            os.remove(self.pidfile)
        except FileNotFoundError:
            pass

    def start(self):
        """Start the daemon"""
        pid = self.read_pid()
        if pid is not None:
            if self.is_alive(pid):
                print("Daemon already running!")
                return
            self.cleanup()

        print("Starting check-in scheduler daemon...")
        self.daemonize()
        self.run_daemon()

    def stop(self):
        """Stop the daemon"""
        pid = self.read_pid()
        if pid is None:
            print("Daemon not running!")
            return

        try:
            os.kill(pid, signal.SIGTERM)
            for _ in range(10):
                time.sleep(1)
                if not self.is_alive(pid):
                    break
            else:
                os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

        self.cleanup()
        print("Check-in scheduler daemon stopped.")

    def restart(self):
        """Restart the daemon"""
        self.stop()
        time.sleep(2)
        self.start()

    def status(self) -> bool:
        """Check daemon status"""
        pid = self.read_pid()
        if pid is None:
            print("Daemon is not running")
            return False

        if self.is_alive(pid):
            print(f"Daemon is running (PID: {pid})")
            return True

        print("Daemon is not running (stale pidfile)")
        self.cleanup()
        return False

    def build_system(self) -> CheckinSystem:
        config = load_config(self.config_file)
        setup_logging(config, handlers=[logging.FileHandler(self.logfile)])
        return CheckinSystem(config)

    def run_once(self):
        """Run a single tick in the foreground"""
        system = self.build_system()
        summary = system.driver.run_tick()
        print(summary.to_dict())
        return summary

    def run_daemon(self):
        """Main daemon loop"""
        signal.signal(signal.SIGTERM, self.signal_handler)
        signal.signal(signal.SIGINT, self.signal_handler)

        try:
            self.system = self.build_system()
            logger.info("Check-in scheduler daemon started successfully")
            self.system.driver.start_monitoring()
        except Exception as e:
            logger.error(f"Daemon stopped with error: {e}")
            sys.exit(1)
        finally:
            self.cleanup()


COMMANDS = ('start', 'stop', 'restart', 'status', 'run-once')


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1 or argv[0] not in COMMANDS:
        print("Check-in Liveness Switch - Background Service")
        print(f"Usage: python background_service.py {{{'|'.join(COMMANDS)}}}")
        return 2

    daemon = CheckinDaemon(config_file=os.getenv("CHECKIN_CONFIG"))
    command = argv[0]
    if command == 'start':
        daemon.start()
    elif command == 'stop':
        daemon.stop()
    elif command == 'restart':
        daemon.restart()
    elif command == 'status':
        daemon.status()
    else:
        daemon.run_once()
    return 0


if __name__ == "__main__":
    sys.exit(main())
