"""Offline receipt scan queue."""

from zerosum.scanning.queue import ScanQueue

__all__ = ["ScanQueue"]
