"""Vulnerability scanner backends."""

from .base import Scanner, select_scanner
from .clair import ClairScanner
from .trivy import TrivyScanner

__all__ = ["Scanner", "select_scanner", "ClairScanner", "TrivyScanner"]
