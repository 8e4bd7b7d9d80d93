"""Shared types for the tools package."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None
    file_path: Optional[str] = None
    operation: Optional[str] = None
