"""Reporting server: catalog-wide index generation and its HTTP surface."""

from .controller import AnalysisResult, RegistryController, Repository
from .web import create_app, serve

__all__ = ["AnalysisResult", "RegistryController", "Repository", "create_app", "serve"]
