"""Epoch millisecond timestamps"""
import time

def now_ms() -> int:
    """Current time in milliseconds since the epoch"""
    return int(time.time() * 1000)
