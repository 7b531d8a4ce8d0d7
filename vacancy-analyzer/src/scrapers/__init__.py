from .base import BaseScraper, ScanResult
from .dou import DouScraper

__all__ = [
    "BaseScraper",
    "ScanResult",
    "DouScraper",
]
