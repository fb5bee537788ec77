"""Utility functions for the registry vulnerability client."""

from .digest import calculate_digest, validate_digest
from .reference import parse_image, parse_repository_tag

__all__ = ["calculate_digest", "validate_digest", "parse_image", "parse_repository_tag"]
