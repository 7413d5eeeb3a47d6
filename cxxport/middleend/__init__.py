"""Middleend - feature analyzers that annotate a parsed IR in place."""

from __future__ import annotations

from cxxport.ir import IR

from .concurrency import analyze_threading
from .coroutines import analyze_async
from .exceptions import analyze_exceptions
from .hierarchy import HierarchyResult, analyze_hierarchy
from .templates import analyze_templates


def analyze(ir: IR) -> IR:
    """Run every feature analyzer. None reads another's output."""
    analyze_templates(ir)
    analyze_exceptions(ir)
    analyze_threading(ir)
    analyze_async(ir)
    return ir


__all__ = [
    "HierarchyResult",
    "analyze",
    "analyze_async",
    "analyze_exceptions",
    "analyze_hierarchy",
    "analyze_templates",
    "analyze_threading",
]
