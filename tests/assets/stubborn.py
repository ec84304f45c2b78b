import signal
import time


def run(log):
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    log("ignoring SIGTERM")
    time.sleep(600)
